"""
Label artifacts produced during acquisition and retrieval.

Plain dataclasses: a LabelAsset is mutated once, when its local copy
arrives, and is otherwise passed around by reference.
"""
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional


@dataclass(frozen=True)
class LocalLabelFile:
    """A label held in memory, ready to upload as a multipart part."""
    filename: str
    content_type: str
    content: bytes

    @property
    def size(self) -> int:
        return len(self.content)


@dataclass
class LabelAsset:
    """
    A purchased label.

    remote_url is authoritative until local_file is attached; a local file
    can only be attached to an asset that has both a remote URL and a
    tracking number.
    """
    tracking_number: str
    created_at: datetime
    price_charged: Decimal
    remote_url: str
    token: Optional[str] = None
    local_file: Optional[LocalLabelFile] = None

    def attach_local_file(self, local_file: LocalLabelFile) -> None:
        if not self.remote_url or not self.tracking_number:
            raise ValueError("Cannot attach a local file to a label without remote_url and tracking_number")
        self.local_file = local_file

    @property
    def is_downloaded(self) -> bool:
        return self.local_file is not None
