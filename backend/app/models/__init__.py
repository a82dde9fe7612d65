from app.models.user import User, UserRole
from app.models.catalog import Theme, Topic
from app.models.book import StorageType, TopicBook

__all__ = [
    "User",
    "UserRole",
    "Theme",
    "Topic",
    "StorageType",
    "TopicBook",
]
