"""
Result Entry Session

Client-side state of one lab request being worked on: the ordered rows,
their local (possibly unsaved) values, and the saves in flight. Replaces
process-wide caches with a single object owned by whoever opened it.

Rows are saved field by field. Only fields the user changed are sent, so
two people editing different sub-tests of the same request never overwrite
each other. A save response only clears a row's dirty state when no newer
local edit happened while it was in flight.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Set

from loguru import logger

from labdesk.api.v1.lab.schemas import (
    ChildTestWithResult,
    RequestedResultResponse,
    ResetToDefaultResponse,
    ResultEntryResponse,
    ResultsBatchResponse,
)
from labdesk.client.autosave import FieldAutosaver
from labdesk.client.gateway import LabGateway
from labdesk.core.exceptions import (
    AuthorizationError,
    BaseCustomException,
    BusinessLogicError,
    NotFoundError,
    ValidationError,
    row_error_to_exception,
)
from labdesk.domain.lab.classifier import ResultShape, classify_shape, flag_for, is_entered, validate_value

VALUE = "result_value"
COMMENT = "result_comment"


@dataclass
class ResultRow:
    """One sub-test as the user sees it"""
    child_test_id: int
    child_test_name: str
    shape: ResultShape
    unit_name: Optional[str] = None
    normal_range: Optional[str] = None
    defval: Optional[str] = None
    child_group: Optional[str] = None
    result_id: Optional[int] = None

    result_value: Optional[str] = None
    result_comment: Optional[str] = None
    result_flags: Optional[str] = None
    is_result_authorized: bool = False
    entered_at: Optional[datetime] = None

    defaulted: bool = False
    dirty_fields: Set[str] = field(default_factory=set)
    revision: int = 0
    saving: bool = False
    error: Optional[BaseCustomException] = None

    @property
    def is_dirty(self) -> bool:
        return bool(self.dirty_fields)

    @property
    def has_value(self) -> bool:
        return is_entered(self.result_value)

    @property
    def is_filled(self) -> bool:
        """Holds a value the server has or will get; a shown default does not count"""
        return self.has_value and not self.defaulted

    def pending_changes(self) -> Dict[str, Any]:
        return {name: getattr(self, name) for name in sorted(self.dirty_fields)}

    def apply_server_state(self, child: ChildTestWithResult) -> None:
        """Take server state for every field not edited locally"""
        self.result_id = child.result_id
        self.is_result_authorized = child.is_result_authorized
        self.entered_at = child.entered_at
        if VALUE not in self.dirty_fields:
            self.result_value = child.result_value
            self.result_flags = child.result_flags
            self.defaulted = False
        if COMMENT not in self.dirty_fields:
            self.result_comment = child.result_comment

    @classmethod
    def from_child(cls, child: ChildTestWithResult) -> "ResultRow":
        row = cls(
            child_test_id=child.id,
            child_test_name=child.child_test_name,
            shape=classify_shape(child),
            unit_name=child.unit_name,
            normal_range=child.normal_range,
            defval=child.defval,
            child_group=child.child_group,
        )
        row.apply_server_state(child)
        return row


@dataclass
class BatchSaveReport:
    saved: List[int] = field(default_factory=list)
    unchanged: List[int] = field(default_factory=list)
    errors: Dict[int, BaseCustomException] = field(default_factory=dict)
    authorized: bool = False
    authorization_error: Optional[BaseCustomException] = None

    @property
    def ok(self) -> bool:
        return not self.errors and self.authorization_error is None


class ResultEntrySession:
    """Working state for one lab request's result entry"""

    def __init__(self, gateway: LabGateway, lab_request_id: int, debounce_ms: Optional[int] = None):
        self.gateway = gateway
        self.lab_request_id = lab_request_id
        self.autosaver = FieldAutosaver(self._save_field, debounce_ms=debounce_ms)

        self.rows: Dict[int, ResultRow] = {}
        self.main_test_id: Optional[int] = None
        self.main_test_name: Optional[str] = None
        self.result_is_locked = False
        self.comment: Optional[str] = None
        self.comment_dirty = False
        self.stale = True

    @classmethod
    async def open(cls, gateway: LabGateway, lab_request_id: int, debounce_ms: Optional[int] = None) -> "ResultEntrySession":
        session = cls(gateway, lab_request_id, debounce_ms=debounce_ms)
        await session.load()
        return session

    async def __aenter__(self) -> "ResultEntrySession":
        if self.stale:
            await self.load()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    # ==================== Loading ====================

    async def load(self) -> None:
        """Replace all local state with the server's"""
        entry = ResultEntryResponse.model_validate(await self.gateway.get_result_entry(self.lab_request_id))
        self.rows = {child.id: ResultRow.from_child(child) for child in entry.child_tests_with_results}
        for row in self.rows.values():
            self._show_default(row)
        self._apply_entry_header(entry)
        self.comment = entry.comment
        self.comment_dirty = False
        self.stale = False
        logger.debug(f"Loaded lab request {self.lab_request_id} with {len(self.rows)} rows")

    async def refresh(self) -> None:
        """Reload from the server while keeping unsaved local edits"""
        entry = ResultEntryResponse.model_validate(await self.gateway.get_result_entry(self.lab_request_id))
        self._merge_entry(entry)
        self.stale = False

    def invalidate(self) -> None:
        """Mark local state outdated; the next refresh or open reloads it"""
        self.stale = True

    def _apply_entry_header(self, entry: ResultEntryResponse) -> None:
        self.main_test_id = entry.main_test_id
        self.main_test_name = entry.main_test_name
        self.result_is_locked = entry.result_is_locked

    def _revisions(self) -> Dict[int, int]:
        return {child_test_id: row.revision for child_test_id, row in self.rows.items()}

    def _merge_entry(self, entry: ResultEntryResponse, revisions: Optional[Dict[int, int]] = None) -> None:
        """Take server state for rows not edited locally.

        With `revisions` (taken when the request was sent), rows edited since
        then keep their local state: the snapshot is older than the edit.
        """
        self._apply_entry_header(entry)
        merged = {}
        for child in entry.child_tests_with_results:
            row = self.rows.get(child.id)
            if row is None:
                row = ResultRow.from_child(child)
            elif revisions is None or revisions.get(child.id) == row.revision:
                row.apply_server_state(child)
            self._show_default(row)
            merged[child.id] = row
        # Rows removed from the definition disappear along with their edits
        for child_test_id in set(self.rows) - set(merged):
            self.autosaver.cancel(child_test_id)
        self.rows = merged
        if not self.comment_dirty:
            self.comment = entry.comment

    @staticmethod
    def _show_default(row: ResultRow) -> None:
        """Display the default of an empty row without queueing it for saving"""
        if row.has_value or row.is_result_authorized or VALUE in row.dirty_fields or not is_entered(row.defval):
            return
        row.result_value = row.defval
        row.result_flags = flag_for(row.shape, row.defval)
        row.defaulted = True

    # ==================== Local edits ====================

    def row(self, child_test_id: int) -> ResultRow:
        try:
            return self.rows[child_test_id]
        except KeyError:
            raise NotFoundError(message=f"Sub-test {child_test_id} is not on this lab request")

    def _ensure_editable(self, row: ResultRow) -> None:
        if self.result_is_locked:
            raise BusinessLogicError(message="Results for this visit are locked", error_code="RESULTS_LOCKED")
        if row.is_result_authorized:
            raise BusinessLogicError(
                message="Result is authorized; unauthorize it before editing",
                details={"child_test_id": row.child_test_id},
                error_code="RESULT_AUTHORIZED"
            )

    def edit(self, child_test_id: int, value: Any, autosave: bool = True) -> ResultRow:
        """Record a local value edit and schedule its save.

        A value that does not fit the sub-test stays on the row with its
        error attached and is not sent until corrected.
        """
        row = self.row(child_test_id)
        self._ensure_editable(row)

        row.result_value = value if value is None or isinstance(value, str) else str(value)
        row.defaulted = False
        row.revision += 1
        row.dirty_fields.add(VALUE)
        try:
            validate_value(row.shape, value, field=VALUE)
        except ValidationError as e:
            row.error = e
            row.result_flags = None
            self.autosaver.cancel(child_test_id)
            return row

        row.error = None
        row.result_flags = flag_for(row.shape, row.result_value)
        if autosave:
            self.autosaver.schedule(child_test_id)
        return row

    def edit_comment(self, child_test_id: int, comment: Optional[str], autosave: bool = True) -> ResultRow:
        row = self.row(child_test_id)
        if self.result_is_locked:
            raise BusinessLogicError(message="Results for this visit are locked", error_code="RESULTS_LOCKED")
        row.result_comment = comment
        row.revision += 1
        row.dirty_fields.add(COMMENT)
        if autosave and not isinstance(row.error, ValidationError):
            self.autosaver.schedule(child_test_id)
        return row

    def accept_default(self, child_test_id: int, autosave: bool = True) -> ResultRow:
        """Keep the shown default as the row's value; it is then saved like an edit"""
        row = self.row(child_test_id)
        if not row.defaulted:
            return row
        return self.edit(child_test_id, row.defval, autosave=autosave)

    def set_request_comment(self, comment: Optional[str]) -> None:
        """Request-level comment; saved with the next batch"""
        self.comment = comment
        self.comment_dirty = True

    def has_all_values(self) -> bool:
        return bool(self.rows) and all(row.is_filled for row in self.rows.values())

    def is_complete(self) -> bool:
        """Every sub-test has a value and is authorized"""
        return self.has_all_values() and all(row.is_result_authorized for row in self.rows.values())

    @property
    def dirty_rows(self) -> List[ResultRow]:
        return [row for row in self.rows.values() if row.is_dirty]

    # ==================== Saving ====================

    async def save_field(self, child_test_id: int) -> ResultRow:
        """Save the row now, queued behind any save of it already in flight"""
        row = self.row(child_test_id)
        await self.autosaver.save_now(child_test_id)
        if row.error is not None and row.is_dirty:
            raise row.error
        return row

    async def _save_field(self, child_test_id: int) -> ResultRow:
        """Send the row's dirty fields; only ever run by the autosaver"""
        row = self.row(child_test_id)
        if isinstance(row.error, ValidationError) and VALUE in row.dirty_fields:
            raise row.error

        changes = row.pending_changes()
        if not changes:
            return row

        sent_revision = row.revision
        row.saving = True
        try:
            payload = await self.gateway.save_result_field(self.lab_request_id, child_test_id, changes)
        except BaseCustomException as e:
            row.error = e
            raise
        finally:
            row.saving = False

        result = RequestedResultResponse.model_validate(payload)
        self._acknowledge(row, changes, sent_revision, result)
        return row

    @staticmethod
    def _acknowledge(
        row: ResultRow,
        sent: Dict[str, Any],
        sent_revision: int,
        result: Optional[RequestedResultResponse] = None
    ) -> None:
        """Clear dirty state only for fields that still hold what was sent"""
        for name, value in sent.items():
            if getattr(row, name) == value:
                row.dirty_fields.discard(name)

        if result is not None:
            row.result_id = result.id
            row.is_result_authorized = result.is_result_authorized
            row.entered_at = result.entered_at
            if row.revision == sent_revision:
                row.result_value = result.result_value
                row.result_flags = result.result_flags
                row.result_comment = result.result_comment

        if row.revision == sent_revision:
            row.error = None

    def schedule_save(self, child_test_id: int) -> None:
        self.row(child_test_id)
        self.autosaver.schedule(child_test_id)

    async def flush(self, child_test_id: int) -> None:
        await self.autosaver.flush(child_test_id)

    async def flush_all(self) -> None:
        """Wait for every scheduled and in-flight save; call before navigating away"""
        await self.autosaver.flush_all()

    async def save_batch(self, authorize: bool = False) -> BatchSaveReport:
        """Send every dirty row plus the request comment in one call"""
        await self.flush_all()
        report = BatchSaveReport()

        sent: Dict[int, Dict[str, Any]] = {}
        for row in self.dirty_rows:
            if isinstance(row.error, ValidationError) and VALUE in row.dirty_fields:
                report.errors[row.child_test_id] = row.error
                continue
            sent[row.child_test_id] = row.pending_changes()

        if report.errors and authorize:
            # Authorizing would cover values the user is still fixing
            authorize = False
            report.authorization_error = AuthorizationError(
                message="Fix invalid values before authorizing",
                details={"child_test_ids": sorted(report.errors)}
            )

        rows = [dict(child_test_id=child_test_id, **changes) for child_test_id, changes in sent.items()]
        revisions = self._revisions()
        try:
            payload = await self.gateway.submit_results(
                self.lab_request_id,
                rows,
                main_test_comment=self.comment,
                send_comment=self.comment_dirty,
                authorize=authorize,
            )
        except BaseCustomException as e:
            for child_test_id in sent:
                self.rows[child_test_id].error = e
            raise

        response = ResultsBatchResponse.model_validate(payload)
        self.comment_dirty = False

        for error in response.errors:
            exception = row_error_to_exception(error.error_code, error.message, error.details)
            report.errors[error.child_test_id] = exception
            row = self.rows.get(error.child_test_id)
            if row is not None and row.revision == revisions.get(error.child_test_id):
                row.error = exception

        for child_test_id in response.saved_child_test_ids + response.unchanged_child_test_ids:
            row = self.rows.get(child_test_id)
            if row is not None and child_test_id in sent:
                self._acknowledge(row, sent[child_test_id], revisions[child_test_id])
        report.saved = response.saved_child_test_ids
        report.unchanged = response.unchanged_child_test_ids

        self._merge_entry(response.result_entry, revisions)
        report.authorized = response.authorized
        if response.authorization_error is not None:
            report.authorization_error = AuthorizationError(
                message=response.authorization_error.message,
                details=response.authorization_error.details,
                error_code=response.authorization_error.error_code,
            )

        logger.info(
            f"Batch save of lab request {self.lab_request_id}: "
            f"{len(report.saved)} saved, {len(report.errors)} failed"
        )
        return report

    # ==================== Authorization ====================

    async def authorize(self, child_test_ids: Optional[List[int]] = None) -> None:
        """Persist pending edits, then authorize; refused while any sub-test is empty"""
        if not self.has_all_values():
            missing = [row.child_test_id for row in self.rows.values() if not row.is_filled]
            raise AuthorizationError(
                message="All sub-tests need a value before results can be authorized",
                details={"missing_child_test_ids": missing}
            )
        await self.flush_all()
        if self.dirty_rows:
            raise AuthorizationError(
                message="Some edits have not been saved",
                details={"child_test_ids": [row.child_test_id for row in self.dirty_rows]}
            )

        revisions = self._revisions()
        entry = ResultEntryResponse.model_validate(
            await self.gateway.authorize(self.lab_request_id, child_test_ids)
        )
        self._merge_entry(entry, revisions)

    async def unauthorize(self, child_test_ids: Optional[List[int]] = None) -> None:
        revisions = self._revisions()
        entry = ResultEntryResponse.model_validate(
            await self.gateway.unauthorize(self.lab_request_id, child_test_ids)
        )
        self._merge_entry(entry, revisions)

    async def reset_to_default(self) -> int:
        """Overwrite every unauthorized value with its default, dropping local edits"""
        for row in self.rows.values():
            if not row.is_result_authorized:
                self.autosaver.cancel(row.child_test_id)
        await self.flush_all()

        revisions = self._revisions()
        response = ResetToDefaultResponse.model_validate(await self.gateway.reset_to_default(self.lab_request_id))
        # Edits made while the reset was in flight are newer and survive it
        reset_rows = [
            row for row in self.rows.values()
            if not row.is_result_authorized and row.revision == revisions.get(row.child_test_id)
        ]
        for row in reset_rows:
            row.dirty_fields.clear()
            row.error = None
        self._merge_entry(response.result_entry, revisions)
        for row in reset_rows:
            row.revision += 1
        return response.updated_count

    async def close(self) -> None:
        await self.autosaver.close()
