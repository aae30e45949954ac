"""
Fulfillment choices.

A session holds exactly one of these. Each knows which of its own fields
are still missing before the shipment can be committed.
"""
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional, Union

from enviadores.modules.finalization.states import FulfillmentKind
from enviadores.schemas.labels import LabelAsset, LocalLabelFile
from enviadores.schemas.shipping import Rate


@dataclass
class ManualChoice:
    """Label bought elsewhere; the operator types in its details and uploads the file."""
    carrier: Optional[str] = None
    tracking_number: Optional[str] = None
    label_file: Optional[LocalLabelFile] = None
    net_cost: Optional[Decimal] = None

    kind = FulfillmentKind.EXTERNAL

    def missing_fields(self) -> List[str]:
        missing = []
        if not (self.carrier or "").strip():
            missing.append("carrier")
        if not (self.tracking_number or "").strip():
            missing.append("tracking_number")
        if self.label_file is None or not self.label_file.content:
            missing.append("label_file")
        if self.net_cost is None or self.net_cost < 0:
            missing.append("net_cost")
        return missing

    @property
    def is_complete(self) -> bool:
        return not self.missing_fields()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "carrier": self.carrier,
            "tracking_number": self.tracking_number,
            "label_file": self.label_file.filename if self.label_file else None,
            "net_cost": str(self.net_cost) if self.net_cost is not None else None,
            "missing": self.missing_fields(),
        }


@dataclass
class AggregatorChoice:
    """Label purchased through the aggregator, then downloaded."""
    offered_rates: List[Rate] = field(default_factory=list)
    rate: Optional[Rate] = None
    label: Optional[LabelAsset] = None
    manual_download_required: bool = False
    manual_download_acknowledged: bool = False
    autofix_used: bool = False

    kind = FulfillmentKind.AGGREGATOR

    @property
    def local_file(self) -> Optional[LocalLabelFile]:
        return self.label.local_file if self.label else None

    def missing_fields(self) -> List[str]:
        missing = []
        if self.rate is None:
            missing.append("rate")
        if self.label is None:
            missing.append("label")
        elif self.local_file is None and not self.manual_download_acknowledged:
            missing.append("label_file")
        return missing

    @property
    def is_complete(self) -> bool:
        return not self.missing_fields()

    def to_dict(self) -> Dict[str, Any]:
        label = None
        if self.label:
            label = {
                "tracking_number": self.label.tracking_number,
                "remote_url": self.label.remote_url,
                "price_charged": str(self.label.price_charged),
                "created_at": self.label.created_at.isoformat(),
                "downloaded": self.label.is_downloaded,
            }
        return {
            "kind": self.kind.value,
            "offered_rates": [r.model_dump(mode="json") for r in self.offered_rates],
            "rate": self.rate.model_dump(mode="json") if self.rate else None,
            "label": label,
            "manual_download_required": self.manual_download_required,
            "manual_download_acknowledged": self.manual_download_acknowledged,
            "autofix_used": self.autofix_used,
            "missing": self.missing_fields(),
        }


FulfillmentChoice = Union[ManualChoice, AggregatorChoice]
