"""
External collaborator interfaces

Object storage (deposit screenshots, wallet QR images) and user notification
are outside the core. Services receive implementations of these interfaces
through their constructors; the in-memory and logging versions below are
used in tests and single-node deployments.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import PurePosixPath
from typing import Any, Dict, List, Optional
import threading
import uuid

from .errors import ValidationError
from .logging_config import get_logger, log_action


ALLOWED_IMAGE_TYPES = {"image/jpeg", "image/jpg", "image/png", "image/webp"}
MAX_IMAGE_SIZE = 5 * 1024 * 1024  # 5MB


def validate_image(content: bytes, content_type: str) -> None:
    """Reject empty, oversized or non-image uploads"""
    if not content:
        raise ValidationError("No file provided")
    if content_type not in ALLOWED_IMAGE_TYPES:
        raise ValidationError("Invalid file type. Only JPEG, JPG, PNG, and WebP images are allowed")
    if len(content) > MAX_IMAGE_SIZE:
        raise ValidationError("File size too large. Maximum size is 5MB")


class ObjectStore(ABC):
    """Opaque key/value storage for uploaded images"""

    def generate_file_key(self, filename: str, prefix: str, owner: str) -> str:
        """Build a unique key such as ``transaction/<owner>/<uuid>.png``"""
        suffix = PurePosixPath(filename or "").suffix.lower()
        return f"{prefix}/{owner}/{uuid.uuid4().hex}{suffix}"

    @abstractmethod
    def upload_file(self, content: bytes, key: str, content_type: str) -> str:
        """Store content under key and return the key"""
        pass

    @abstractmethod
    def exists(self, key: str) -> bool:
        pass

    @abstractmethod
    def delete_file(self, key: str) -> bool:
        """Remove the object; False when it was absent"""
        pass

    @abstractmethod
    def generate_presigned_url(self, key: str, expires_in: int = 3600) -> str:
        """Time-limited URL for reading the object"""
        pass


class InMemoryObjectStore(ObjectStore):
    """Object store kept in process memory"""

    def __init__(self, bucket: str = "staking"):
        self.bucket = bucket
        self._objects: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    def upload_file(self, content: bytes, key: str, content_type: str) -> str:
        with self._lock:
            self._objects[key] = {"content": bytes(content), "content_type": content_type}
        return key

    def exists(self, key: str) -> bool:
        with self._lock:
            return key in self._objects

    def delete_file(self, key: str) -> bool:
        with self._lock:
            return self._objects.pop(key, None) is not None

    def get(self, key: str) -> Optional[bytes]:
        with self._lock:
            obj = self._objects.get(key)
            return obj["content"] if obj else None

    def generate_presigned_url(self, key: str, expires_in: int = 3600) -> str:
        expires_at = int(datetime.now(timezone.utc).timestamp()) + expires_in
        return f"memory://{self.bucket}/{key}?expires={expires_at}"


class Notifier(ABC):
    """Fire-and-forget user notification"""

    @abstractmethod
    def notify(
        self,
        user_id: str,
        subject: str,
        message: str,
        metadata: Optional[Dict[str, Any]] = None
    ) -> None:
        pass


class LoggingNotifier(Notifier):
    """Writes notifications to the application log"""

    def __init__(self):
        self.logger = get_logger("staking.notifications")

    def notify(self, user_id, subject, message, metadata=None):
        log_action(
            self.logger, "info", subject,
            user_id=user_id, action="notify", extra={"message": message, **(metadata or {})}
        )


@dataclass
class SentNotification:
    user_id: str
    subject: str
    message: str
    metadata: Dict[str, Any] = field(default_factory=dict)


class InMemoryNotifier(Notifier):
    """Collects notifications for inspection"""

    def __init__(self):
        self.sent: List[SentNotification] = []

    def notify(self, user_id, subject, message, metadata=None):
        self.sent.append(SentNotification(user_id, subject, message, dict(metadata or {})))
