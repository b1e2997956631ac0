"""
Audit Recorder

The one entry point domain actions use to record an audit event.

Every event goes through the same contract regardless of criticality:
normalize -> append -> publish side effects. Criticality only decides what
happens to the CALLING ACTION when the append cannot be committed:

    HIGH_ASSURANCE   the error propagates and the action must fail
    BEST_EFFORT      contention/unavailable is logged and counted, record()
                     returns None and the action proceeds

ValidationError always propagates: a malformed event is a bug in the
caller, not a degraded-mode condition.
"""

from typing import Any, Optional

from ..observability import get_logger, get_metrics
from ..schemas import AppendReceipt, AuditEvent, Criticality, LedgerEntry
from .append import ChainAppendEngine
from .dispatch import SideEffectDispatcher
from .errors import ContentionError, StorageUnavailable
from .normalizer import EventNormalizer

logger = get_logger(__name__)


class AuditRecorder:
    """Normalizer + append engine + side-effect queue behind one call."""

    def __init__(
        self,
        engine: ChainAppendEngine,
        normalizer: Optional[EventNormalizer] = None,
        dispatcher: Optional[SideEffectDispatcher] = None,
    ):
        self._engine = engine
        self._normalizer = normalizer or EventNormalizer(engine.config)
        self._dispatcher = dispatcher

    @property
    def engine(self) -> ChainAppendEngine:
        return self._engine

    @property
    def normalizer(self) -> EventNormalizer:
        return self._normalizer

    def append(self, event: AuditEvent | dict[str, Any]) -> LedgerEntry:
        """
        Strict path: normalize and append, raising on any failure.

        Raises:
            ValidationError, ContentionError, StorageUnavailable
        """
        normalized = self._normalizer.normalize(event)
        entry = self._engine.append(normalized.chain_id, normalized)
        if self._dispatcher is not None:
            self._dispatcher.publish(entry)
        return entry

    def record(self, event: AuditEvent | dict[str, Any]) -> Optional[AppendReceipt]:
        """
        Record an event applying its criticality policy.

        Returns the receipt, or None when a best-effort event could not be
        committed.
        """
        normalized = self._normalizer.normalize(event)
        try:
            entry = self._engine.append(normalized.chain_id, normalized)
        except (ContentionError, StorageUnavailable) as e:
            if normalized.criticality == Criticality.HIGH_ASSURANCE:
                logger.error(
                    "High-assurance audit event could not be committed",
                    chain_id=normalized.chain_id,
                    event_type=normalized.event_type,
                    code=e.code,
                    error=str(e),
                )
                raise
            get_metrics().increment("degraded_appends")
            logger.warning(
                "Best-effort audit event not recorded",
                chain_id=normalized.chain_id,
                event_type=normalized.event_type,
                code=e.code,
                error=str(e),
            )
            return None

        if self._dispatcher is not None:
            self._dispatcher.publish(entry)
        return AppendReceipt.from_entry(entry)
