"""
Request bodies for the finalization API.
"""
from typing import Optional

from pydantic import BaseModel

from enviadores.modules.finalization.states import FulfillmentKind
from enviadores.schemas.shipping import CustomerRecord, DestinationRecord, Quote, QuoteLinkage


class OpenSessionRequest(BaseModel):
    quote: Quote
    linkage: QuoteLinkage
    customer: Optional[CustomerRecord] = None
    destination: Optional[DestinationRecord] = None


class ChooseFulfillmentRequest(BaseModel):
    kind: FulfillmentKind


class UpdateRecordsRequest(BaseModel):
    customer: Optional[CustomerRecord] = None
    destination: Optional[DestinationRecord] = None


class RequoteRequest(BaseModel):
    quote: Quote
    linkage: Optional[QuoteLinkage] = None
