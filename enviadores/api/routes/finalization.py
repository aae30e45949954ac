"""
Finalization API Routes

Operator actions on finalization sessions. Sessions live in memory, one
FinalizationStateMachine per id; all durable state is in the backend.

Errors from the workflow are returned as {"detail": error.to_dict()} by
the handler registered in enviadores.main.
"""
import logging
import mimetypes
from decimal import Decimal
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, Request, UploadFile, status

from enviadores.core.exceptions import (
    AuthError,
    CommitError,
    ConsistencyError,
    EnviadoresError,
    IncompleteFulfillmentError,
    InvalidTransitionError,
    RateLimitError,
    TransientError,
    ValidationError,
)
from enviadores.modules.finalization.machine import FinalizationStateMachine
from enviadores.modules.finalization.states import TERMINAL
from enviadores.schemas.finalization import (
    ChooseFulfillmentRequest,
    OpenSessionRequest,
    RequoteRequest,
    UpdateRecordsRequest,
)
from enviadores.schemas.labels import LocalLabelFile
from enviadores.services.aggregator_session import AggregatorSession
from enviadores.services.label_acquisition import LabelAcquisitionClient
from enviadores.services.label_retrieval import LabelRetrievalService
from enviadores.services.rate_shopping import RateShoppingClient
from enviadores.services.shipment_commit import ShipmentCommitClient

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/finalization", tags=["finalization"])

# Most specific first
ERROR_STATUS = (
    (ValidationError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (ConsistencyError, status.HTTP_409_CONFLICT),
    (InvalidTransitionError, status.HTTP_409_CONFLICT),
    (IncompleteFulfillmentError, status.HTTP_409_CONFLICT),
    (AuthError, status.HTTP_502_BAD_GATEWAY),
    (RateLimitError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (CommitError, status.HTTP_502_BAD_GATEWAY),
    (TransientError, status.HTTP_502_BAD_GATEWAY),
)


def status_for_error(error: EnviadoresError) -> int:
    for error_type, code in ERROR_STATUS:
        if isinstance(error, error_type):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


class SessionRegistry:
    """In-memory finalization sessions sharing one set of service clients."""

    def __init__(
        self,
        rate_client: RateShoppingClient,
        label_client: LabelAcquisitionClient,
        retrieval: LabelRetrievalService,
        commit_client: ShipmentCommitClient,
        aggregator_session: Optional[AggregatorSession] = None,
        **machine_options: Any,
    ):
        self.rate_client = rate_client
        self.label_client = label_client
        self.retrieval = retrieval
        self.commit_client = commit_client
        self.aggregator_session = aggregator_session
        self.machine_options = machine_options
        self._sessions: Dict[str, FinalizationStateMachine] = {}

    @classmethod
    def from_settings(cls) -> "SessionRegistry":
        aggregator = AggregatorSession()
        return cls(
            rate_client=RateShoppingClient(aggregator),
            label_client=LabelAcquisitionClient(aggregator),
            retrieval=LabelRetrievalService(),
            commit_client=ShipmentCommitClient(),
            aggregator_session=aggregator,
        )

    def __len__(self) -> int:
        return len(self._sessions)

    def open(self, request: OpenSessionRequest) -> FinalizationStateMachine:
        self.evict_finished()
        machine = FinalizationStateMachine(
            request.quote,
            request.linkage,
            request.customer,
            request.destination,
            rate_client=self.rate_client,
            label_client=self.label_client,
            retrieval=self.retrieval,
            commit_client=self.commit_client,
            **self.machine_options,
        )
        self._sessions[machine.session_id] = machine
        logger.info(f"[FINALIZE] Opened session {machine.session_id[:8]}")
        return machine

    def get(self, session_id: str) -> Optional[FinalizationStateMachine]:
        return self._sessions.get(session_id)

    def evict_finished(self) -> int:
        """Drop committed or closed sessions, including ones the countdown committed."""
        finished = [sid for sid, machine in self._sessions.items() if machine.status in TERMINAL]
        for session_id in finished:
            del self._sessions[session_id]
        if finished:
            logger.info(f"[FINALIZE] Released {len(finished)} finished session(s)")
        return len(finished)

    def close(self, session_id: str) -> bool:
        machine = self._sessions.pop(session_id, None)
        if machine is None:
            return False
        machine.close()
        return True

    async def aclose(self) -> None:
        """Close every session and the shared HTTP clients."""
        for session_id in list(self._sessions):
            self.close(session_id)
        await self.retrieval.close()
        await self.commit_client.close()
        if self.aggregator_session:
            await self.aggregator_session.close()


def get_registry(request: Request) -> SessionRegistry:
    return request.app.state.registry


def get_machine(session_id: str, registry: SessionRegistry = Depends(get_registry)) -> FinalizationStateMachine:
    machine = registry.get(session_id)
    if machine is None:
        raise HTTPException(status_code=404, detail="Finalization session not found")
    return machine


# ==================== Sessions ====================


@router.post("/sessions", status_code=status.HTTP_201_CREATED)
async def open_session(body: OpenSessionRequest, registry: SessionRegistry = Depends(get_registry)):
    """Open a finalization session for a priced quote."""
    return registry.open(body).snapshot()


@router.get("/sessions/{session_id}")
async def get_session(machine: FinalizationStateMachine = Depends(get_machine)):
    return machine.snapshot()


@router.delete("/sessions/{session_id}", status_code=status.HTTP_204_NO_CONTENT)
async def close_session(session_id: str, registry: SessionRegistry = Depends(get_registry)):
    if not registry.close(session_id):
        raise HTTPException(status_code=404, detail="Finalization session not found")


@router.delete("/sessions/{session_id}/error")
async def dismiss_error(machine: FinalizationStateMachine = Depends(get_machine)):
    machine.dismiss_error()
    return machine.snapshot()


# ==================== Fulfillment ====================


@router.post("/sessions/{session_id}/fulfillment")
async def choose_fulfillment(
    body: ChooseFulfillmentRequest,
    machine: FinalizationStateMachine = Depends(get_machine),
):
    machine.choose_fulfillment(body.kind)
    return machine.snapshot()


@router.put("/sessions/{session_id}/manual")
async def update_manual(
    carrier: Optional[str] = Form(None),
    tracking_number: Optional[str] = Form(None),
    net_cost: Optional[Decimal] = Form(None),
    label_file: Optional[UploadFile] = File(None),
    machine: FinalizationStateMachine = Depends(get_machine),
):
    """Update the external-label draft. Send only the fields that changed."""
    local_file = None
    if label_file is not None:
        content = await label_file.read()
        filename = label_file.filename or "guia.pdf"
        local_file = LocalLabelFile(
            filename=filename,
            content_type=label_file.content_type or mimetypes.guess_type(filename)[0] or "application/pdf",
            content=content,
        )

    machine.update_manual(
        carrier=carrier,
        tracking_number=tracking_number,
        label_file=local_file,
        net_cost=net_cost,
    )
    return machine.snapshot()


@router.put("/sessions/{session_id}/records")
async def update_records(body: UpdateRecordsRequest, machine: FinalizationStateMachine = Depends(get_machine)):
    machine.update_records(customer=body.customer, destination=body.destination)
    return machine.snapshot()


@router.post("/sessions/{session_id}/requote")
async def requote(body: RequoteRequest, machine: FinalizationStateMachine = Depends(get_machine)):
    machine.rebind_quote(body.quote, body.linkage)
    return machine.snapshot()


# ==================== Aggregator path ====================


@router.post("/sessions/{session_id}/rates")
async def query_rates(machine: FinalizationStateMachine = Depends(get_machine)):
    await machine.query_rates()
    return machine.snapshot()


@router.post("/sessions/{session_id}/rates/{rate_id}")
async def select_rate(rate_id: str, machine: FinalizationStateMachine = Depends(get_machine)):
    machine.select_rate(rate_id)
    return machine.snapshot()


@router.post("/sessions/{session_id}/label")
async def generate_label(machine: FinalizationStateMachine = Depends(get_machine)):
    """Purchase the label for the selected rate and download it."""
    await machine.generate_label()
    return machine.snapshot()


@router.post("/sessions/{session_id}/label/autofix")
async def autofix_label(machine: FinalizationStateMachine = Depends(get_machine)):
    await machine.retry_label_with_fixes()
    return machine.snapshot()


@router.post("/sessions/{session_id}/label/download")
async def retry_download(machine: FinalizationStateMachine = Depends(get_machine)):
    await machine.retrieve_asset()
    return machine.snapshot()


@router.post("/sessions/{session_id}/manual-download")
async def acknowledge_manual_download(machine: FinalizationStateMachine = Depends(get_machine)):
    machine.acknowledge_manual_download()
    return machine.snapshot()


# ==================== Commit ====================


@router.delete("/sessions/{session_id}/timer")
async def cancel_auto_commit(machine: FinalizationStateMachine = Depends(get_machine)):
    machine.cancel_auto_commit()
    return machine.snapshot()


@router.post("/sessions/{session_id}/commit")
async def commit(
    confirm_history_checked: bool = Query(False),
    machine: FinalizationStateMachine = Depends(get_machine),
    registry: SessionRegistry = Depends(get_registry),
):
    await machine.commit(confirm_history_checked=confirm_history_checked)
    snapshot = machine.snapshot()
    registry.evict_finished()
    return snapshot


# ==================== Aggregator account ====================


@router.get("/labels")
async def label_history(
    page: Optional[int] = Query(None, ge=1),
    tracking_number: Optional[str] = Query(None),
    registry: SessionRegistry = Depends(get_registry),
):
    """Previously purchased labels, for checking an abandoned or uncertain purchase."""
    history = await registry.label_client.list_labels(page=page, tracking_number=tracking_number)
    return history.model_dump(mode="json")


@router.get("/balance")
async def balance(registry: SessionRegistry = Depends(get_registry)):
    account = await registry.rate_client.get_balance()
    return account.model_dump(mode="json")
