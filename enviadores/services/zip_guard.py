"""
ZIP consistency guard.

Prices are postal-code sensitive. Before a shipment is committed, the ZIPs
the quote was priced with must still match the ZIPs on the customer
(origin) and destination records. Any drift blocks the commit until the
operator re-quotes.
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from enviadores.core.exceptions import ConsistencyError
from enviadores.schemas.shipping import CustomerRecord, DestinationRecord, Quote

logger = logging.getLogger(__name__)

ORIGIN = "origin"
DESTINATION = "destination"


@dataclass(frozen=True)
class ZipMismatch:
    side: str           # origin | destination
    quoted_zip: str
    current_zip: str

    @property
    def difference(self) -> Optional[int]:
        """Numeric distance between the two codes, None if either is not numeric."""
        if self.quoted_zip.isdigit() and self.current_zip.isdigit():
            return abs(int(self.current_zip) - int(self.quoted_zip))
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "side": self.side,
            "quoted_zip": self.quoted_zip,
            "current_zip": self.current_zip,
            "difference": self.difference,
        }


class ZipConsistencyGuard:
    """Compares quote ZIPs with the records currently bound to the session."""

    def check(
        self,
        quote: Quote,
        customer: Optional[CustomerRecord],
        destination: Optional[DestinationRecord],
    ) -> List[ZipMismatch]:
        """Return every mismatch; an empty list means commit may proceed."""
        mismatches: List[ZipMismatch] = []
        pairs = (
            (ORIGIN, quote.origin_zip, customer.postal_code if customer else ""),
            (DESTINATION, quote.dest_zip, destination.postal_code if destination else ""),
        )
        for side, quoted, current in pairs:
            current = (current or "").strip()
            if current != quoted:
                mismatches.append(ZipMismatch(side=side, quoted_zip=quoted, current_zip=current))
        return mismatches

    def ensure_consistent(
        self,
        quote: Quote,
        customer: Optional[CustomerRecord],
        destination: Optional[DestinationRecord],
    ) -> None:
        """
        Raises:
            ConsistencyError: either side drifted since the quote was priced
        """
        mismatches = self.check(quote, customer, destination)
        if not mismatches:
            return

        summary = ", ".join(f"{m.side} {m.quoted_zip}->{m.current_zip or '(none)'}" for m in mismatches)
        logger.warning(f"[ZIP] Commit blocked: {summary}")
        raise ConsistencyError(
            message="Postal codes changed since this quote was priced; re-quote before finalizing",
            mismatches=mismatches,
        )
