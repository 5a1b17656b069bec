"""Capture hook: turns one mutation event into at most one history record.

The hook runs synchronously inside the transaction of the mutation it audits.
Its only side effect is the append; it never retries and never touches the
audited rows. Failures are fail-closed: a wiring error, a missing partition
or a storage error propagates and aborts the mutation, so nothing changes on
an instrumented table while its audit path is broken.

Branches on (operation, granularity):

    row update              diff; suppressed when only ignored columns changed
    row insert / delete     row image only
    statement insert/update/delete/truncate
                            statement-level record, no images
                            (truncate is recorded as bulk-clear)
    anything else           ConfigurationError
"""
import logging
from typing import Optional

from .diff import compute_diff
from .errors import ConfigurationError, StructuredError
from .metrics import CAPTURE_FAILURES, RECORDS_CAPTURED, UPDATES_SUPPRESSED
from .partitions import PartitionRouter
from .schemas import (
    Action,
    CaptureContext,
    Granularity,
    HistoryRecord,
    MutationEvent,
    Operation,
    TableAuditConfig,
    TableIdentity,
)
from .storage.base import HistoryWriter

logger = logging.getLogger("change_history.capture")

_ROW_ACTIONS = {
    Operation.INSERT: Action.INSERT,
    Operation.UPDATE: Action.UPDATE,
    Operation.DELETE: Action.DELETE,
}

_STATEMENT_ACTIONS = {
    Operation.INSERT: Action.INSERT,
    Operation.UPDATE: Action.UPDATE,
    Operation.DELETE: Action.DELETE,
    Operation.TRUNCATE: Action.BULK_CLEAR,
}


class CaptureHook:
    """Per-table capture entry point.

    Example:
        >>> hook = CaptureHook(table, TableAuditConfig(ignored_columns={"secret"}), router)
        >>> with store.transaction() as writer:
        ...     hook.fire(MutationEvent(Operation.INSERT, Granularity.ROW,
        ...                             new_image={"id": 1, "secret": "s"}),
        ...               context, writer)
    """

    def __init__(self, table: TableIdentity, config: TableAuditConfig, router: PartitionRouter):
        self.table = table
        self.config = config
        self.router = router

    def fire(
        self,
        event: MutationEvent,
        context: CaptureContext,
        writer: HistoryWriter,
    ) -> Optional[HistoryRecord]:
        """Capture one event.

        Args:
            event: The mutation, with row images for row-level events.
            context: Session/transaction metadata of the mutation.
            writer: Writer bound to the mutation's transaction.

        Returns:
            The appended record, or None for a suppressed update.

        Raises:
            ConfigurationError: The event is not one the hook handles.
            MissingPartitionError: statement_time's month is not provisioned.
        """
        try:
            return self._capture(event, context, writer)
        except StructuredError as e:
            CAPTURE_FAILURES.labels(reason=type(e).__name__).inc()
            logger.error(
                "Capture failed on %s: %s",
                self.table.qualified_name,
                e.message,
                extra={"error": e.to_dict()},
            )
            raise

    def _capture(
        self,
        event: MutationEvent,
        context: CaptureContext,
        writer: HistoryWriter,
    ) -> Optional[HistoryRecord]:
        operation, granularity = self._classify(event)

        # Statement text is always captured and cleared here when disabled,
        # keeping a single code path.
        statement_text = context.statement_text
        if not self.config.capture_statement_text:
            statement_text = None

        row_image = None
        changed = None
        if granularity is Granularity.ROW and operation in _ROW_ACTIONS:
            action = _ROW_ACTIONS[operation]
            diff = compute_diff(action, event.old_image, event.new_image, self.config.ignored_columns)
            if diff is None:
                UPDATES_SUPPRESSED.inc()
                logger.debug(
                    "Update on %s touched only ignored columns; not recorded",
                    self.table.qualified_name,
                )
                return None
            row_image = diff.row_image
            changed = diff.changed_fields
        elif granularity is Granularity.STATEMENT and operation in _STATEMENT_ACTIONS:
            action = _STATEMENT_ACTIONS[operation]
        else:
            raise ConfigurationError(
                f"Capture hook on {self.table.qualified_name} fired for unsupported "
                f"{granularity.value}-level {operation.value}",
                details={
                    "table": self.table.qualified_name,
                    "operation": operation.value,
                    "granularity": granularity.value,
                }
            )

        partition = self.router.route(context.statement_time)
        record = HistoryRecord(
            event_id=writer.next_event_id(),
            schema_name=self.table.schema_name,
            table_name=self.table.table_name,
            relation_id=self.table.relation_id,
            actor=context.actor,
            tx_time=context.tx_time,
            statement_time=context.statement_time,
            clock_time=context.clock_time,
            transaction_id=context.transaction_id,
            client_context=context.client_context,
            statement_text=statement_text,
            action=action,
            row_image=row_image,
            changed_fields=changed,
            is_statement_level=granularity is Granularity.STATEMENT,
        )
        writer.append(partition, record)
        RECORDS_CAPTURED.labels(action=action.value, level=granularity.value).inc()
        return record

    def _classify(self, event: MutationEvent) -> tuple[Operation, Granularity]:
        try:
            return Operation(event.operation), Granularity(event.granularity)
        except ValueError as e:
            raise ConfigurationError(
                f"Capture hook on {self.table.qualified_name} fired for unknown event "
                f"({event.operation!r}, {event.granularity!r})",
                details={
                    "table": self.table.qualified_name,
                    "operation": str(event.operation),
                    "granularity": str(event.granularity),
                }
            ) from e
