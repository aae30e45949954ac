"""
Finalization State Machine

Turns a priced quote into a committed shipment along one of two paths:

    external:   operator enters carrier, tracking number, net cost and the
                label file bought elsewhere
    aggregator: query rates -> select one -> purchase label -> download it

Rules enforced here:
- exactly one fulfillment choice per session; switching discards the other
- the auto-commit countdown arms when an aggregator label is downloaded
- commit always disarms the countdown first; at most one commit in flight
- ZIP drift since the quote blocks commit
- a late result from a call the session has moved past is ignored

Retries belong to the service clients. This class only decides what a
surfaced error means for the session.
"""
import logging
import uuid
from decimal import Decimal
from typing import Any, Dict, List, Optional

from enviadores.core.config import settings
from enviadores.core.exceptions import (
    CommitOutcomeUnknownError,
    EnviadoresError,
    IncompleteFulfillmentError,
    InvalidTransitionError,
    RetrievalExhaustedError,
    ValidationError,
)
from enviadores.modules.finalization.choices import AggregatorChoice, FulfillmentChoice, ManualChoice
from enviadores.modules.finalization.states import (
    COMMITTABLE,
    SWITCHABLE,
    TERMINAL,
    FinalizationStatus,
    FulfillmentKind,
    can_transition,
)
from enviadores.modules.finalization.timer import AutoCommitTimer
from enviadores.schemas.labels import LabelAsset, LocalLabelFile
from enviadores.schemas.shipping import CustomerRecord, DestinationRecord, PartyAddress, Quote, QuoteLinkage, Rate
from enviadores.services.label_acquisition import (
    LabelAcquisitionClient,
    apply_common_defaults,
    map_customer_address,
    map_destination_address,
)
from enviadores.services.label_retrieval import LabelRetrievalService
from enviadores.services.rate_shopping import RateShoppingClient
from enviadores.services.shipment_commit import ShipmentCommitClient
from enviadores.services.zip_guard import ZipConsistencyGuard, ZipMismatch

logger = logging.getLogger(__name__)

Status = FinalizationStatus


class FinalizationStateMachine:
    """
    One finalization session for one quote.

    Usage:
        machine = FinalizationStateMachine(quote, linkage, customer, destination,
                                           rate_client=..., label_client=...,
                                           retrieval=..., commit_client=...)
        machine.choose_fulfillment("aggregator")
        rates = await machine.query_rates()
        machine.select_rate(rates[0].id)
        await machine.generate_label()      # purchases and downloads
        # countdown now running; commit fires on its own unless cancelled
    """

    def __init__(
        self,
        quote: Quote,
        linkage: QuoteLinkage,
        customer: Optional[CustomerRecord] = None,
        destination: Optional[DestinationRecord] = None,
        *,
        rate_client: RateShoppingClient,
        label_client: LabelAcquisitionClient,
        retrieval: LabelRetrievalService,
        commit_client: ShipmentCommitClient,
        zip_guard: Optional[ZipConsistencyGuard] = None,
        auto_commit_seconds: Optional[int] = None,
        tick_seconds: Optional[float] = None,
        idempotency_keys: Optional[bool] = None,
        session_id: Optional[str] = None,
    ):
        self.session_id = session_id or uuid.uuid4().hex
        self.quote = quote
        self.linkage = linkage
        self.customer = customer
        self.destination = destination

        self.rate_client = rate_client
        self.label_client = label_client
        self.retrieval = retrieval
        self.commit_client = commit_client
        self.zip_guard = zip_guard or ZipConsistencyGuard()

        self.auto_commit_seconds = auto_commit_seconds or settings.AUTO_COMMIT_SECONDS
        self.tick_seconds = tick_seconds or settings.AUTO_COMMIT_TICK_SECONDS
        use_keys = settings.COMMIT_IDEMPOTENCY_KEYS_ENABLED if idempotency_keys is None else idempotency_keys
        self.idempotency_key: Optional[str] = str(uuid.uuid4()) if use_keys else None

        self.status = Status.SELECTING
        self.choice: Optional[FulfillmentChoice] = None
        self.timer: Optional[AutoCommitTimer] = None
        self.manual_commit_mode = False
        self.last_error: Optional[EnviadoresError] = None
        self.shipment_id: Optional[str] = None
        self.commit_outcome_unknown = False
        self.abandoned_labels: List[LabelAsset] = []

        self._generation = 0
        self._commit_in_flight = False
        self._destination_dirty = False
        self._label_validation_error: Optional[ValidationError] = None

    # ==================== Helpers ====================

    @property
    def kind(self) -> Optional[FulfillmentKind]:
        return self.choice.kind if self.choice else None

    @property
    def countdown_remaining(self) -> Optional[int]:
        if self.timer and self.timer.is_running:
            return self.timer.remaining
        return None

    @property
    def commit_in_flight(self) -> bool:
        return self._commit_in_flight

    def _tag(self) -> str:
        return f"[FINALIZE] {self.session_id[:8]}"

    def _set_status(self, target: FinalizationStatus) -> None:
        if target == self.status:
            return
        if not can_transition(self.status, target):
            raise InvalidTransitionError(current=self.status.value, action=f"move to {target.value}")
        logger.info(f"{self._tag()} {self.status.value} -> {target.value}")
        self.status = target

    def _require_status(self, action: str, allowed) -> None:
        if self.status not in allowed:
            raise InvalidTransitionError(current=self.status.value, action=action)

    def _require_aggregator(self, action: str) -> AggregatorChoice:
        if not isinstance(self.choice, AggregatorChoice):
            raise InvalidTransitionError(
                current=self.status.value,
                action=action,
                message=f"Cannot {action}: the aggregator path is not selected",
            )
        return self.choice

    def _is_current(self, generation: int, choice: Optional[FulfillmentChoice]) -> bool:
        return generation == self._generation and self.choice is choice and self.status not in TERMINAL

    def _abandon_label(self, label: Optional[LabelAsset], reason: str) -> None:
        if label is None or label in self.abandoned_labels:
            return
        self.abandoned_labels.append(label)
        logger.warning(
            f"{self._tag()} Purchased label {label.tracking_number} abandoned ({reason}); it was not voided"
        )

    def _discard_choice(self, reason: str) -> None:
        """Drop the active choice's progress and stop anything automatic."""
        self._disarm_timer()
        if isinstance(self.choice, AggregatorChoice):
            self._abandon_label(self.choice.label, reason)
        self._generation += 1
        self._label_validation_error = None

    def _disarm_timer(self) -> bool:
        if self.timer is None:
            return False
        return self.timer.cancel()

    def _arm_timer(self) -> None:
        if self.manual_commit_mode:
            logger.info(f"{self._tag()} Manual commit mode, countdown not armed")
            return
        if self.timer and self.timer.is_running:
            return
        self.timer = AutoCommitTimer(
            on_fire=self._fire_auto_commit,
            seconds=self.auto_commit_seconds,
            tick_seconds=self.tick_seconds,
        )
        self.timer.arm()

    def _fail(self, error: EnviadoresError) -> EnviadoresError:
        self.last_error = error
        return error

    # ==================== Fulfillment choice ====================

    def choose_fulfillment(self, kind) -> FulfillmentChoice:
        """
        Pick (or switch) the fulfillment path.

        Switching discards every draft field of the previous path. Picking
        the path that is already active keeps its state.
        """
        kind = FulfillmentKind(kind)
        self._require_status("change fulfillment path", SWITCHABLE)

        if self.choice is not None and self.choice.kind == kind:
            return self.choice

        if self.choice is not None:
            self._discard_choice(reason=f"switched to {kind.value}")

        self.choice = ManualChoice() if kind == FulfillmentKind.EXTERNAL else AggregatorChoice()
        self.manual_commit_mode = False
        self.last_error = None
        self._set_status(Status.CONFIGURING)
        logger.info(f"{self._tag()} Fulfillment path: {kind.value}")
        return self.choice

    def update_manual(
        self,
        carrier: Optional[str] = None,
        tracking_number: Optional[str] = None,
        label_file: Optional[LocalLabelFile] = None,
        net_cost: Optional[Decimal] = None,
    ) -> ManualChoice:
        """Fill in the external-label draft. Arguments left as None are unchanged."""
        if not isinstance(self.choice, ManualChoice):
            raise InvalidTransitionError(
                current=self.status.value,
                action="edit the external label",
                message="Cannot edit the external label: the external path is not selected",
            )
        self._require_status("edit the external label", {Status.CONFIGURING, Status.MANUAL_READY, Status.COMMIT_FAILED})

        if net_cost is not None:
            net_cost = Decimal(str(net_cost))
            if net_cost < 0:
                raise self._fail(ValidationError(
                    "Net cost cannot be negative",
                    field_errors={"net_cost": "must be zero or greater"},
                ))

        choice = self.choice
        if carrier is not None:
            choice.carrier = carrier.strip()
        if tracking_number is not None:
            choice.tracking_number = tracking_number.strip()
        if label_file is not None:
            choice.label_file = label_file
        if net_cost is not None:
            choice.net_cost = net_cost

        self._set_status(Status.MANUAL_READY if choice.is_complete else Status.CONFIGURING)
        return choice

    # ==================== Aggregator path ====================

    async def query_rates(self) -> List[Rate]:
        """
        Ask the aggregator for services on the quoted route.

        An empty list is a normal result ("no service on this route").
        """
        choice = self._require_aggregator("query rates")
        self._require_status("query rates", {Status.CONFIGURING})
        if choice.rate is not None:
            raise InvalidTransitionError(
                current=self.status.value,
                action="query rates",
                message="A rate was already selected for this session",
            )

        self._set_status(Status.ACQUIRING_RATE)
        generation = self._generation
        try:
            rates = await self.rate_client.get_rates_for_quote(self.quote)
        except EnviadoresError as e:
            if self._is_current(generation, choice):
                self.last_error = e
                self._set_status(Status.CONFIGURING)
            raise

        if not self._is_current(generation, choice):
            logger.info(f"{self._tag()} Ignoring rate results for a discarded path")
            return rates

        choice.offered_rates = list(rates)
        self.last_error = None
        self._set_status(Status.CONFIGURING)
        return rates

    def select_rate(self, rate_id: str) -> Rate:
        """Choose one of the offered rates. Allowed once per aggregator path."""
        choice = self._require_aggregator("select a rate")
        self._require_status("select a rate", {Status.CONFIGURING})
        if choice.rate is not None:
            raise InvalidTransitionError(
                current=self.status.value,
                action="select a rate",
                message="A rate was already selected for this session",
            )

        for rate in choice.offered_rates:
            if rate.id == rate_id:
                choice.rate = rate
                self._set_status(Status.RATE_SELECTED)
                logger.info(f"{self._tag()} Selected rate {rate.id} ({rate.display_name})")
                return rate

        raise self._fail(ValidationError(
            "Rate is not among the offered options",
            field_errors={"rate_id": f"unknown rate {rate_id}"},
        ))

    def _build_addresses(self):
        missing = []
        if self.customer is None:
            missing.append("customer")
        if self.destination is None:
            missing.append("destination")
        if missing:
            raise self._fail(IncompleteFulfillmentError("Sender and recipient are required", missing=missing))
        return map_customer_address(self.customer), map_destination_address(self.destination)

    async def generate_label(self, retrieve: bool = True) -> Optional[LabelAsset]:
        """
        Purchase the label for the selected rate, then download it.

        On a ValidationError the session goes back to RATE_SELECTED and
        retry_label_with_fixes() may be offered once.
        """
        choice = self._require_aggregator("generate a label")
        self._require_status("generate a label", {Status.RATE_SELECTED})

        sender, recipient = self._build_addresses()
        return await self._purchase(choice, sender, recipient, retrieve)

    async def retry_label_with_fixes(self, retrieve: bool = True) -> Optional[LabelAsset]:
        """Apply placeholder email / street number fixes and resubmit exactly once."""
        choice = self._require_aggregator("auto-fix the label request")
        self._require_status("auto-fix the label request", {Status.RATE_SELECTED})

        error = self._label_validation_error
        if error is None:
            raise InvalidTransitionError(
                current=self.status.value,
                action="auto-fix the label request",
                message="There is no rejected label request to fix",
            )
        if choice.autofix_used:
            raise InvalidTransitionError(
                current=self.status.value,
                action="auto-fix the label request",
                message="Automatic fixes were already tried; correct the data manually",
            )

        # Records may have been edited since the rejected request
        current_sender, current_recipient = self._build_addresses()
        sender, recipient, applied = apply_common_defaults(current_sender, current_recipient, error.field_errors)
        if not applied:
            raise self._fail(ValidationError(
                "None of the rejected fields can be fixed automatically",
                field_errors=error.field_errors,
            ))

        logger.info(f"{self._tag()} Auto-fix applied to {', '.join(applied)}")
        choice.autofix_used = True
        return await self._purchase(choice, sender, recipient, retrieve)

    async def _purchase(
        self,
        choice: AggregatorChoice,
        sender: PartyAddress,
        recipient: PartyAddress,
        retrieve: bool,
    ) -> Optional[LabelAsset]:
        self._set_status(Status.GENERATING_LABEL)
        generation = self._generation
        try:
            label = await self.label_client.purchase_label(sender, recipient, choice.rate.id, self.quote.parcel)
        except ValidationError as e:
            if self._is_current(generation, choice):
                self._label_validation_error = e
                self.last_error = e
                self._set_status(Status.RATE_SELECTED)
            raise
        except EnviadoresError as e:
            if self._is_current(generation, choice):
                self.last_error = e
                self._set_status(Status.RATE_SELECTED)
            raise

        if not self._is_current(generation, choice):
            self._abandon_label(label, "path discarded during purchase")
            return None

        choice.label = label
        self.last_error = None
        self._label_validation_error = None
        self._set_status(Status.LABEL_READY)
        await self.commit_client.update_quotation_status(self.linkage.temp_quote_id, choice)

        if retrieve and self._is_current(generation, choice):
            await self.retrieve_asset()
        return label

    async def retrieve_asset(self) -> Optional[LocalLabelFile]:
        """
        Download the purchased label.

        Exhausted retries do not fail the session: it reaches ASSET_READY
        in manual-download mode and the countdown stays disarmed.
        """
        choice = self._require_aggregator("download the label")
        self._require_status("download the label", {Status.LABEL_READY, Status.ASSET_READY})
        label = choice.label
        if label is None:
            raise IncompleteFulfillmentError("No label has been purchased", missing=["label"])
        if label.local_file is not None:
            return label.local_file

        self._set_status(Status.RETRIEVING_ASSET)
        generation = self._generation
        try:
            local_file = await self.retrieval.retrieve(label.remote_url, label.tracking_number)
        except RetrievalExhaustedError as e:
            if self._is_current(generation, choice):
                choice.manual_download_required = True
                self.last_error = e
                self._set_status(Status.ASSET_READY)
                logger.warning(f"{self._tag()} Label {label.tracking_number} needs manual download")
            return None

        if not self._is_current(generation, choice):
            logger.info(f"{self._tag()} Ignoring downloaded label for a discarded path")
            return None

        label.attach_local_file(local_file)
        choice.manual_download_required = False
        self.last_error = None
        self._set_status(Status.ASSET_READY)
        self._arm_timer()
        return local_file

    def acknowledge_manual_download(self) -> AggregatorChoice:
        """Operator confirms they saved the label from its remote URL."""
        choice = self._require_aggregator("acknowledge manual download")
        self._require_status("acknowledge manual download", {Status.ASSET_READY})
        if not choice.manual_download_required:
            raise InvalidTransitionError(
                current=self.status.value,
                action="acknowledge manual download",
                message="The label was downloaded; no manual download is needed",
            )
        choice.manual_download_acknowledged = True
        self.last_error = None
        logger.info(f"{self._tag()} Manual download acknowledged for {choice.label.tracking_number}")
        return choice

    # ==================== Countdown ====================

    def cancel_auto_commit(self) -> bool:
        """Stop the countdown and switch to manual commit. Acquired state is kept."""
        if self.status in TERMINAL:
            raise InvalidTransitionError(current=self.status.value, action="cancel auto-commit")
        self.manual_commit_mode = True
        return self._disarm_timer()

    async def _fire_auto_commit(self) -> None:
        if self.status != Status.ASSET_READY or self._commit_in_flight:
            logger.info(f"{self._tag()} Countdown expired in {self.status.value}, not committing")
            return
        logger.info(f"{self._tag()} Countdown expired, committing")
        try:
            await self.commit()
        except EnviadoresError as e:
            logger.warning(f"{self._tag()} Automatic commit failed: {e.code}")

    # ==================== Commit ====================

    async def commit(self, confirm_history_checked: bool = False) -> str:
        """
        Submit the shipment.

        Raises:
            InvalidTransitionError: wrong status, commit in flight, or an
                unknown previous outcome that was not confirmed
            IncompleteFulfillmentError: active path is missing fields
            ConsistencyError: ZIPs drifted since the quote
            RateLimitError / CommitError / TransientError: from the backend
        """
        self._disarm_timer()

        if self._commit_in_flight or self.status == Status.COMMITTING:
            raise InvalidTransitionError(
                current=self.status.value,
                action="commit",
                message="A commit is already in progress for this session",
            )
        self._require_status("commit", COMMITTABLE)

        if self.commit_outcome_unknown and not confirm_history_checked:
            raise self._fail(InvalidTransitionError(
                current=self.status.value,
                action="commit",
                message="The previous commit may have succeeded; check shipment history and confirm before retrying",
            ))

        choice = self.choice
        missing = choice.missing_fields() if choice else ["fulfillment"]
        if missing:
            raise self._fail(IncompleteFulfillmentError(
                "The selected fulfillment path is not complete",
                missing=missing,
            ))

        try:
            self.zip_guard.ensure_consistent(self.quote, self.customer, self.destination)
        except EnviadoresError as e:
            raise self._fail(e)

        self._commit_in_flight = True
        generation = self._generation
        self._set_status(Status.COMMITTING)
        try:
            if self._destination_dirty and self.destination is not None:
                if await self.commit_client.update_destination(
                    self.destination.id,
                    self.destination.model_dump(by_alias=True, exclude={"id"}, exclude_none=True),
                ):
                    self._destination_dirty = False
            if isinstance(choice, ManualChoice):
                await self.commit_client.update_quotation_status(self.linkage.temp_quote_id, choice)

            shipment_id = await self.commit_client.commit(choice, self.linkage, self.idempotency_key)
        except CommitOutcomeUnknownError as e:
            self.commit_outcome_unknown = True
            if self.status == Status.COMMITTING:
                self._set_status(Status.COMMIT_FAILED)
            raise self._fail(e)
        except EnviadoresError as e:
            if self.status == Status.COMMITTING:
                self._set_status(Status.COMMIT_FAILED)
            raise self._fail(e)
        finally:
            self._commit_in_flight = False

        self.shipment_id = shipment_id
        if generation != self._generation or self.status != Status.COMMITTING:
            logger.warning(f"{self._tag()} Shipment {shipment_id} created after the session was closed")
            return shipment_id

        self.commit_outcome_unknown = False
        self.last_error = None
        self._set_status(Status.COMMITTED)
        logger.info(f"{self._tag()} Committed as shipment {shipment_id}")
        return shipment_id

    # ==================== Records and quote ====================

    def zip_check(self) -> List[ZipMismatch]:
        return self.zip_guard.check(self.quote, self.customer, self.destination)

    def update_records(
        self,
        customer: Optional[CustomerRecord] = None,
        destination: Optional[DestinationRecord] = None,
    ) -> List[ZipMismatch]:
        """Replace the bound customer/destination and report any ZIP drift."""
        if self.status in TERMINAL or self.status == Status.COMMITTING:
            raise InvalidTransitionError(current=self.status.value, action="update records")
        if customer is not None:
            self.customer = customer
        if destination is not None:
            self.destination = destination
            self._destination_dirty = True
        return self.zip_check()

    def rebind_quote(self, quote: Quote, linkage: Optional[QuoteLinkage] = None) -> None:
        """
        Accept a fresh quote after ZIP drift.

        Aggregator progress priced under the old quote is discarded; an
        external-label draft is kept.
        """
        self._require_status("re-quote", SWITCHABLE)
        self.quote = quote
        if linkage is not None:
            self.linkage = linkage

        if isinstance(self.choice, AggregatorChoice):
            self._discard_choice(reason="re-quoted")
            self.choice = AggregatorChoice()
        else:
            self._disarm_timer()
            self._generation += 1

        self.manual_commit_mode = False
        self.last_error = None
        if isinstance(self.choice, ManualChoice) and self.choice.is_complete:
            self._set_status(Status.MANUAL_READY)
        elif self.choice is not None:
            self._set_status(Status.CONFIGURING)
        logger.info(f"{self._tag()} Re-quoted {quote.origin_zip}->{quote.dest_zip}")

    # ==================== Session ====================

    def dismiss_error(self) -> None:
        self.last_error = None

    def close(self) -> None:
        """End the session. Nothing automatic runs afterwards."""
        if self.status in TERMINAL:
            return
        if self.status == Status.COMMITTING:
            # The in-flight commit may still create the shipment
            self._disarm_timer()
            self._generation += 1
        else:
            self._discard_choice(reason="session closed")
        self._set_status(Status.CLOSED)

    def snapshot(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "status": self.status.value,
            "kind": self.kind.value if self.kind else None,
            "choice": self.choice.to_dict() if self.choice else None,
            "quote": self.quote.model_dump(mode="json"),
            "countdown_remaining": self.countdown_remaining,
            "timer_state": self.timer.state.value if self.timer else None,
            "manual_commit_mode": self.manual_commit_mode,
            "commit_in_flight": self._commit_in_flight,
            "commit_outcome_unknown": self.commit_outcome_unknown,
            "shipment_id": self.shipment_id,
            "last_error": self.last_error.to_dict() if self.last_error else None,
            "zip_mismatches": [m.to_dict() for m in self.zip_check()],
            "abandoned_labels": [label.tracking_number for label in self.abandoned_labels],
        }
