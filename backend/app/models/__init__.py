from app.db.base import Base  # noqa: F401
from app.models.user import User, UserRole  # noqa: F401
from app.models.post import Post, PostState  # noqa: F401
from app.models.media import MediaAsset, MediaAssetDerivative  # noqa: F401

__all__ = [
    "Base",
    "User",
    "UserRole",
    "Post",
    "PostState",
    "MediaAsset",
    "MediaAssetDerivative",
]
