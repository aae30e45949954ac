"""
Shipping Schemas for the finalization workflow.

Pydantic models for quotes, aggregator rates and the customer/destination
records bound to a shipment. Records arrive from the backend with Spanish
keys (codigo_postal, nombre_destinatario ...), accepted here as aliases.
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

ZIP_PATTERN = r"^\d{5}$"


# ==================== Quote Schemas ====================


class Parcel(BaseModel):
    """Package measured at quotation time."""
    model_config = ConfigDict(frozen=True)

    weight_kg: float = Field(..., gt=0)
    height_cm: Optional[float] = Field(None, gt=0)
    length_cm: Optional[float] = Field(None, gt=0)
    width_cm: Optional[float] = Field(None, gt=0)
    declared_value: Optional[Decimal] = Field(None, ge=0)
    content: Optional[str] = Field(None, max_length=100)
    package_type: str = "paquete"  # paquete | sobre


class Quote(BaseModel):
    """A priced service locked in before finalization. Read-only."""
    model_config = ConfigDict(frozen=True)

    origin_zip: str = Field(..., pattern=ZIP_PATTERN)
    dest_zip: str = Field(..., pattern=ZIP_PATTERN)
    parcel: Parcel
    selected_rate_id: str = Field(..., min_length=1)
    price_with_tax: Decimal = Field(..., ge=0)

    @field_validator("origin_zip", "dest_zip", mode="before")
    @classmethod
    def strip_zip(cls, v):
        if isinstance(v, str):
            return v.strip()
        return v


class QuoteLinkage(BaseModel):
    """Backend ids and computed totals carried from the quote into the shipment."""
    model_config = ConfigDict(frozen=True)

    customer_id: str
    destination_id: str
    service_id: str
    billable_weight_kg: float = Field(1.0, gt=0)
    volumetric_weight_kg: Optional[float] = Field(None, gt=0)
    declared_value: Decimal = Field(Decimal("0"), ge=0)
    insurance_cost: Decimal = Field(Decimal("0"), ge=0)
    shipping_cost: Decimal = Field(..., ge=0)
    total_with_tax: Decimal = Field(..., ge=0)
    package_type: str = "paquete"
    packaging_option: Optional[str] = None
    requires_pickup: bool = False
    content: str = ""
    temp_quote_id: Optional[str] = None

    @property
    def tax(self) -> Decimal:
        return self.total_with_tax - self.shipping_cost


# ==================== Aggregator Schemas ====================


class Rate(BaseModel):
    """One priced service option returned by the aggregator."""
    model_config = ConfigDict(frozen=True)

    id: str
    carrier: str
    service_name: str
    shipping_type: str = ""
    total_amount: Decimal
    currency: str = "MXN"
    zone: Optional[int] = None
    lead_time: Optional[str] = None
    cancellable: Optional[bool] = None
    additional_fees: List[Dict[str, Any]] = Field(default_factory=list)

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "Rate":
        """Build from an aggregator rate (uuid/service/total_amount as string)."""
        return cls(
            id=data["uuid"],
            carrier=data.get("carrier", ""),
            service_name=data.get("service", ""),
            shipping_type=data.get("shipping_type") or "",
            total_amount=Decimal(str(data.get("total_amount") or "0")),
            currency=data.get("currency") or "MXN",
            zone=data.get("zone"),
            lead_time=data.get("lead_time"),
            cancellable=data.get("cancellable"),
            additional_fees=data.get("additional_fees") or [],
        )

    @property
    def display_name(self) -> str:
        return f"{self.carrier} - {self.service_name}"


class PartyAddress(BaseModel):
    """Address in the aggregator's wire format."""
    country_code: str = "MX"
    zip_code: str
    name: Optional[str] = None
    street1: Optional[str] = None
    neighborhood: Optional[str] = None
    external_number: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    country: Optional[str] = None
    reference: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


class LabelHistoryEntry(BaseModel):
    token: Optional[str] = None
    tracking_number: Optional[str] = None
    label_url: Optional[str] = None
    created_at: Optional[datetime] = None
    price: Optional[Decimal] = None
    carrier: Optional[str] = None


class LabelHistoryPage(BaseModel):
    """One page of previously purchased labels."""
    labels: List[LabelHistoryEntry] = Field(default_factory=list)
    page: int = 1
    total_pages: int = 1

    def find(self, tracking_number: str) -> Optional[LabelHistoryEntry]:
        for entry in self.labels:
            if entry.tracking_number == tracking_number:
                return entry
        return None


class AccountBalance(BaseModel):
    amount: Decimal
    currency: str = "MXN"


# ==================== Record Schemas ====================


class CustomerRecord(BaseModel):
    """Sender (cliente) as currently stored in the backend."""
    model_config = ConfigDict(populate_by_name=True)

    id: str
    name: str = Field(..., alias="nombre")
    street: str = Field("", alias="calle")
    external_number: Optional[str] = Field(None, alias="numero_exterior")
    neighborhood: str = Field("", alias="colonia")
    municipality: str = Field("", alias="municipio")
    state: str = Field("", alias="estado")
    postal_code: str = Field(..., alias="codigo_postal")
    phone: str = Field("", alias="telefono")
    email: Optional[str] = None
    country: str = Field("México", alias="pais")
    reference: Optional[str] = Field(None, alias="referencia")

    @field_validator("postal_code", mode="before")
    @classmethod
    def strip_postal_code(cls, v):
        return v.strip() if isinstance(v, str) else v


class DestinationRecord(BaseModel):
    """Recipient (destino) as currently stored in the backend."""
    model_config = ConfigDict(populate_by_name=True)

    id: str
    customer_id: Optional[str] = Field(None, alias="cliente_id")
    recipient_name: str = Field(..., alias="nombre_destinatario")
    street: str = Field("", alias="direccion")
    external_number: Optional[str] = Field(None, alias="numero_exterior")
    neighborhood: str = Field("", alias="colonia")
    city: str = Field("", alias="ciudad")
    state: str = Field("", alias="estado")
    postal_code: str = Field(..., alias="codigo_postal")
    phone: str = Field("", alias="telefono")
    email: Optional[str] = None
    country: str = Field("México", alias="pais")
    reference: Optional[str] = Field(None, alias="referencia")

    @field_validator("postal_code", mode="before")
    @classmethod
    def strip_postal_code(cls, v):
        return v.strip() if isinstance(v, str) else v
