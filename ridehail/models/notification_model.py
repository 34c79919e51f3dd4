"""
Notification Model - Per-user notification history
"""

from mongoengine import Document, StringField, BooleanField, DateTimeField, DictField

from ridehail.utils.helpers import isoformat, utcnow


class Notification(Document):
    meta = {
        "collection": "notifications",
        "indexes": ["user_id", "-created_at"],
    }

    user_id = StringField(required=True)
    title = StringField(required=True, max_length=200)
    body = StringField(max_length=1000)
    type = StringField(max_length=50, default="default")
    ride_id = StringField()
    data = DictField()
    read = BooleanField(default=False)
    created_at = DateTimeField(default=utcnow)

    def to_dict(self):
        return {
            "id": str(self.id),
            "user_id": self.user_id,
            "title": self.title,
            "body": self.body,
            "type": self.type,
            "ride_id": self.ride_id,
            "data": self.data,
            "read": self.read,
            "created_at": isoformat(self.created_at),
        }
