"""
Lab Workflow Service Layer

Business logic for the lab request lifecycle: registering requests on a
visit, result writes (single field and batch), authorization, sample
collection, reset-to-default and queue classification.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from labdesk.core.exceptions import (
    AuthorizationError,
    BaseCustomException,
    BusinessLogicError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from labdesk.domain.lab.classifier import (
    ResultShape,
    classify_shape,
    flag_for,
    is_entered,
    validate_value,
)
from labdesk.domain.lab.models import ChildTest, LabRequest, MainTest, RequestedResult, Visit
from labdesk.domain.lab.queues import (
    QueueBucket,
    QueueFilters,
    VisitQueueItem,
    build_queue_item,
    default_reception_window,
    filter_queue,
    paginate,
)
from labdesk.domain.lab.repository import (
    LabRequestRepository,
    CatalogRepository,
    VisitRepository,
)
from labdesk.domain.lab.sample_ids import SampleIdGenerator, VisitSequenceSampleIdGenerator
from labdesk.core.config import settings

RESULT_FIELDS = ("result_value", "result_comment")

# Sample collection outcomes
COLLECTED = "collected"
ALREADY_COLLECTED = "already_collected"
NOT_PAYABLE = "not_payable"
NO_SAMPLE = "no_sample"
FAILED = "failed"

MAX_SAMPLE_ID_ATTEMPTS = 10


@dataclass
class RowError:
    child_test_id: int
    error: BaseCustomException


@dataclass
class BatchOutcome:
    """Per-row outcome of a batch submit; one bad row never blocks the rest"""
    lab_request: LabRequest
    saved: List[RequestedResult] = field(default_factory=list)
    unchanged: List[int] = field(default_factory=list)
    errors: List[RowError] = field(default_factory=list)
    authorized: bool = False
    authorization_error: Optional[AuthorizationError] = None


@dataclass
class SampleOutcome:
    lab_request_id: int
    status: str
    sample_id: Optional[str] = None
    message: Optional[str] = None


@dataclass
class VisitSampleOutcome:
    visit_id: int
    outcomes: List[SampleOutcome] = field(default_factory=list)

    @property
    def updated_count(self) -> int:
        return sum(1 for o in self.outcomes if o.status == COLLECTED)


class LabService:
    """Service layer for lab workflow operations"""

    def __init__(self, db: AsyncSession, sample_id_generator: Optional[SampleIdGenerator] = None):
        self.db = db
        self.definitions = CatalogRepository(db)
        self.visit_repo = VisitRepository(db)
        self.request_repo = LabRequestRepository(db)
        self.sample_id_generator = sample_id_generator or VisitSequenceSampleIdGenerator(
            prefix=settings.SAMPLE_ID_PREFIX
        )

    # ==================== Visits ====================

    async def register_visit(self, visit_data: dict) -> Visit:
        visit = await self.visit_repo.create(visit_data)
        logger.info(f"Registered visit {visit.id} for patient {visit.patient_id}")
        return visit

    async def get_visit(self, visit_id: int) -> Visit:
        visit = await self.visit_repo.get_by_id(visit_id)
        if not visit:
            raise NotFoundError(message=f"Visit {visit_id} not found")
        return visit

    async def set_result_lock(self, visit_id: int, locked: bool) -> Visit:
        """Lock or release every result write on the visit"""
        visit = await self.get_visit(visit_id)
        visit.result_is_locked = locked
        logger.info(f"Visit {visit_id} results {'locked' if locked else 'unlocked'}")
        return await self.visit_repo.save(visit)

    async def mark_printed(self, visit_id: int) -> Visit:
        visit = await self.get_visit(visit_id)
        visit.is_printed = True
        return await self.visit_repo.save(visit)

    # ==================== Lab requests ====================

    async def add_lab_tests_to_visit(
        self,
        visit_id: int,
        main_test_ids: List[int],
        comment: Optional[str] = None,
        user_id: Optional[int] = None
    ) -> List[LabRequest]:
        """Create one request per new test, each seeded with its result rows"""
        visit = await self.get_visit(visit_id)
        already_requested = {r.main_test_id for r in visit.lab_requests if r.valid}

        wanted = []
        for main_test_id in main_test_ids:
            if main_test_id not in already_requested and main_test_id not in wanted:
                wanted.append(main_test_id)

        main_tests = {t.id: t for t in await self.definitions.get_main_tests(wanted)}
        missing = [i for i in wanted if i not in main_tests]
        if missing:
            raise NotFoundError(
                message="Unknown main test(s)",
                details={"main_test_ids": missing}
            )

        now = datetime.utcnow()
        created = []
        for main_test_id in wanted:
            main_test = main_tests[main_test_id]
            if not main_test.available:
                logger.warning(f"Skipping unavailable test {main_test.id} for visit {visit_id}")
                continue

            lab_request = LabRequest(
                visit_id=visit_id,
                main_test_id=main_test.id,
                price=main_test.price or 0.0,
                comment=comment,
                user_requested=user_id,
                created_at=now,
                updated_at=now,
            )
            results = [self._seed_result(child) for child in main_test.child_tests]
            created.append(self.request_repo.add_with_results(lab_request, results))

        await self.request_repo.commit()
        logger.info(f"Added {len(created)} lab request(s) to visit {visit_id}")
        return await self.request_repo.get_many([r.id for r in created])

    @staticmethod
    def _seed_result(child: ChildTest) -> RequestedResult:
        shape = classify_shape(child)
        value = child.defval
        return RequestedResult(
            child_test_id=child.id,
            result_value=value,
            result_flags=flag_for(shape, value),
            is_result_authorized=False,
        )

    async def get_available_lab_tests(self, visit_id: int) -> List[MainTest]:
        """Tests that can still be added to the visit"""
        visit = await self.get_visit(visit_id)
        requested = {r.main_test_id for r in visit.lab_requests if r.valid}
        return await self.definitions.list_available(exclude_ids=requested)

    async def list_lab_requests_for_visit(self, visit_id: int) -> List[LabRequest]:
        await self.get_visit(visit_id)
        return await self.request_repo.list_for_visit(visit_id)

    async def get_lab_request(self, lab_request_id: int) -> LabRequest:
        lab_request = await self.request_repo.get_by_id(lab_request_id)
        if not lab_request:
            raise NotFoundError(message=f"Lab request {lab_request_id} not found")
        return lab_request

    async def cancel_lab_request(self, lab_request_id: int) -> None:
        """Remove a request that nothing has happened to yet"""
        lab_request = await self.get_lab_request(lab_request_id)
        if lab_request.is_paid or lab_request.amount_paid > 0:
            raise BusinessLogicError(message="Paid lab requests cannot be cancelled; mark them invalid instead")
        if lab_request.sample_id:
            raise BusinessLogicError(message="Sample already collected; mark the request invalid instead")
        if any(r.entered_at is not None or r.is_result_authorized for r in lab_request.results):
            raise BusinessLogicError(message="Results already entered; mark the request invalid instead")

        await self.request_repo.delete(lab_request)
        logger.info(f"Cancelled lab request {lab_request_id}")

    async def record_payment(self, lab_request_id: int, amount: float, is_bankak: bool = False) -> LabRequest:
        lab_request = await self.get_lab_request(lab_request_id)
        if not lab_request.valid:
            raise BusinessLogicError(message="Cannot take payment for an invalid lab request")
        if amount <= 0:
            raise ValidationError(message="Payment amount must be positive", details={"field": "amount"})

        outstanding = lab_request.net_amount - lab_request.amount_paid
        if amount > outstanding + 1e-9:
            raise BusinessLogicError(
                message="Payment exceeds the outstanding amount",
                details={"outstanding": round(outstanding, 2)}
            )

        lab_request.amount_paid += amount
        lab_request.is_bankak = is_bankak
        lab_request.is_paid = lab_request.amount_paid + 1e-9 >= lab_request.net_amount
        await self.request_repo.commit()
        logger.info(f"Recorded payment {amount} on lab request {lab_request_id}")
        return await self.get_lab_request(lab_request_id)

    async def update_flags(
        self,
        lab_request_id: int,
        hidden: Optional[bool] = None,
        no_sample: Optional[bool] = None,
        valid: Optional[bool] = None
    ) -> LabRequest:
        lab_request = await self.get_lab_request(lab_request_id)
        if hidden is not None:
            lab_request.hidden = hidden
        if no_sample is not None:
            lab_request.no_sample = no_sample
        if valid is not None:
            lab_request.valid = valid
        await self.request_repo.commit()
        return await self.get_lab_request(lab_request_id)

    async def update_comment(self, lab_request_id: int, comment: Optional[str]) -> LabRequest:
        lab_request = await self.get_lab_request(lab_request_id)
        lab_request.comment = comment
        await self.request_repo.commit()
        return await self.get_lab_request(lab_request_id)

    # ==================== Result entry ====================

    async def get_for_result_entry(self, lab_request_id: int) -> LabRequest:
        """Request with its ordered child test definitions and current results"""
        return await self.get_lab_request(lab_request_id)

    @staticmethod
    def _shapes(lab_request: LabRequest) -> Dict[int, Tuple[ChildTest, ResultShape]]:
        return {
            child.id: (child, classify_shape(child))
            for child in lab_request.main_test.child_tests
        }

    @staticmethod
    def _ensure_writable(lab_request: LabRequest) -> None:
        if lab_request.visit is not None and lab_request.visit.result_is_locked:
            raise BusinessLogicError(
                message="Results for this visit are locked",
                error_code="RESULTS_LOCKED"
            )
        if not lab_request.valid:
            raise BusinessLogicError(message="Lab request is no longer valid")

    def _resolve_row(
        self,
        lab_request: LabRequest,
        shapes: Dict[int, Tuple[ChildTest, ResultShape]],
        child_test_id: int
    ) -> Tuple[RequestedResult, ResultShape]:
        row = self.request_repo.results_by_child_test(lab_request).get(child_test_id)
        if row is None or child_test_id not in shapes:
            raise ConflictError(
                message=f"Sub-test {child_test_id} is not part of lab request {lab_request.id}",
                details={"child_test_id": child_test_id}
            )
        return row, shapes[child_test_id][1]

    @staticmethod
    def _apply_changes(
        row: RequestedResult,
        shape: ResultShape,
        changes: Dict[str, Any],
        user_id: Optional[int],
        now: datetime
    ) -> bool:
        """Write only the fields present in `changes`; unchanged values are skipped"""
        changed = False

        if "result_value" in changes:
            value = validate_value(shape, changes["result_value"], field="result_value")
            if value != row.result_value:
                if row.is_result_authorized:
                    raise BusinessLogicError(
                        message="Result is authorized; unauthorize it before editing",
                        details={"child_test_id": row.child_test_id},
                        error_code="RESULT_AUTHORIZED"
                    )
                row.result_value = value
                row.result_flags = flag_for(shape, value)
                row.entered_at = now
                row.entered_by = user_id
                changed = True

        if "result_comment" in changes:
            comment = changes["result_comment"]
            if comment != row.result_comment:
                row.result_comment = comment
                changed = True

        return changed

    async def save_result_field(
        self,
        lab_request_id: int,
        child_test_id: int,
        changes: Dict[str, Any],
        user_id: Optional[int] = None
    ) -> RequestedResult:
        """Field-level write of exactly one (request, sub-test) row"""
        lab_request = await self.get_lab_request(lab_request_id)
        self._ensure_writable(lab_request)
        shapes = self._shapes(lab_request)
        row, shape = self._resolve_row(lab_request, shapes, child_test_id)

        changes = {k: v for k, v in changes.items() if k in RESULT_FIELDS}
        changed = self._apply_changes(row, shape, changes, user_id, datetime.utcnow())

        if changed:
            await self.request_repo.commit()
            logger.info(
                f"Saved {', '.join(sorted(changes))} for lab request {lab_request_id} sub-test {child_test_id}"
            )
        return row

    async def submit_results(
        self,
        lab_request_id: int,
        rows: Iterable[Dict[str, Any]],
        main_test_comment: Optional[str] = None,
        authorize: bool = False,
        user_id: Optional[int] = None
    ) -> BatchOutcome:
        """Batch write; each row carries only the fields its sender changed"""
        lab_request = await self.get_lab_request(lab_request_id)
        self._ensure_writable(lab_request)
        shapes = self._shapes(lab_request)
        outcome = BatchOutcome(lab_request=lab_request)
        now = datetime.utcnow()

        for payload in rows:
            child_test_id = payload["child_test_id"]
            changes = {k: payload[k] for k in RESULT_FIELDS if k in payload}
            try:
                row, shape = self._resolve_row(lab_request, shapes, child_test_id)
                if self._apply_changes(row, shape, changes, user_id, now):
                    outcome.saved.append(row)
                else:
                    outcome.unchanged.append(child_test_id)
            except (ValidationError, ConflictError, BusinessLogicError) as e:
                logger.warning(f"Rejected sub-test {child_test_id} on lab request {lab_request_id}: {e.message}")
                outcome.errors.append(RowError(child_test_id=child_test_id, error=e))

        if main_test_comment is not None and main_test_comment != lab_request.comment:
            lab_request.comment = main_test_comment

        await self.request_repo.commit()
        logger.info(
            f"Batch saved lab request {lab_request_id}: {len(outcome.saved)} saved, "
            f"{len(outcome.unchanged)} unchanged, {len(outcome.errors)} rejected"
        )

        if authorize:
            try:
                await self.authorize_results(lab_request_id, user_id=user_id)
                outcome.authorized = True
            except AuthorizationError as e:
                outcome.authorization_error = e

        outcome.lab_request = await self.get_lab_request(lab_request_id)
        return outcome

    async def authorize_results(
        self,
        lab_request_id: int,
        child_test_ids: Optional[List[int]] = None,
        user_id: Optional[int] = None
    ) -> LabRequest:
        """Authorize sub-tests; refused until every sub-test has a value"""
        lab_request = await self.get_lab_request(lab_request_id)
        self._ensure_writable(lab_request)
        by_child = self.request_repo.results_by_child_test(lab_request)

        missing = [r.child_test_id for r in lab_request.results if not is_entered(r.result_value)]
        if missing or not lab_request.results:
            raise AuthorizationError(
                message="All sub-tests need a value before results can be authorized",
                details={"missing_child_test_ids": missing}
            )

        targets = child_test_ids if child_test_ids is not None else list(by_child)
        unknown = [i for i in targets if i not in by_child]
        if unknown:
            raise ConflictError(
                message="Sub-test(s) not part of this lab request",
                details={"child_test_ids": unknown}
            )

        now = datetime.utcnow()
        for child_test_id in targets:
            row = by_child[child_test_id]
            if not row.is_result_authorized:
                row.is_result_authorized = True
                row.authorized_at = now
                row.authorized_by = user_id

        await self.request_repo.commit()
        logger.info(f"Authorized {len(targets)} result(s) on lab request {lab_request_id}")
        return await self.get_lab_request(lab_request_id)

    async def unauthorize_results(
        self,
        lab_request_id: int,
        child_test_ids: Optional[List[int]] = None
    ) -> LabRequest:
        """Explicit revocation; the only way an authorization is undone"""
        lab_request = await self.get_lab_request(lab_request_id)
        self._ensure_writable(lab_request)
        by_child = self.request_repo.results_by_child_test(lab_request)

        targets = child_test_ids if child_test_ids is not None else list(by_child)
        unknown = [i for i in targets if i not in by_child]
        if unknown:
            raise ConflictError(
                message="Sub-test(s) not part of this lab request",
                details={"child_test_ids": unknown}
            )

        for child_test_id in targets:
            row = by_child[child_test_id]
            row.is_result_authorized = False
            row.authorized_at = None
            row.authorized_by = None

        await self.request_repo.commit()
        logger.info(f"Unauthorized {len(targets)} result(s) on lab request {lab_request_id}")
        return await self.get_lab_request(lab_request_id)

    async def reset_to_default(self, lab_request_id: int, user_id: Optional[int] = None) -> Tuple[LabRequest, int]:
        """Overwrite every unauthorized value with its default; destructive, no confirmation"""
        lab_request = await self.get_lab_request(lab_request_id)
        self._ensure_writable(lab_request)
        shapes = self._shapes(lab_request)
        now = datetime.utcnow()

        updated = 0
        for row in lab_request.results:
            if row.is_result_authorized or row.child_test_id not in shapes:
                continue
            child, shape = shapes[row.child_test_id]
            if row.result_value != child.defval:
                row.result_value = child.defval
                row.entered_at = now
                row.entered_by = user_id
                updated += 1
            row.result_flags = flag_for(shape, row.result_value)

        await self.request_repo.commit()
        logger.info(f"Reset {updated} result(s) to default on lab request {lab_request_id}")
        return await self.get_lab_request(lab_request_id), updated

    # ==================== Sample collection ====================

    async def _assign_sample_id(self, lab_request: LabRequest) -> str:
        """Ask the generator until it yields an id no other request holds"""
        for _ in range(MAX_SAMPLE_ID_ATTEMPTS):
            candidate = self.sample_id_generator.generate(
                lab_request.visit_id, lab_request.id, lab_request.sample_id_revision
            )
            if not await self.request_repo.sample_id_taken(candidate, exclude_id=lab_request.id):
                return candidate
            logger.warning(f"Sample id {candidate} already taken, advancing revision")
            lab_request.sample_id_revision += 1

        raise ConflictError(
            message="Could not generate a unique sample id",
            details={"lab_request_id": lab_request.id, "attempts": MAX_SAMPLE_ID_ATTEMPTS}
        )

    def _check_collectable(self, lab_request: LabRequest) -> Optional[str]:
        if not lab_request.valid:
            return "Lab request is no longer valid"
        if lab_request.no_sample:
            return "Lab request does not need a sample"
        if settings.SAMPLE_REQUIRES_PAYMENT and not lab_request.is_paid:
            return "Lab request is not paid"
        return None

    async def mark_sample_collected(self, lab_request_id: int, user_id: Optional[int] = None) -> LabRequest:
        """Assign the sample id once; repeated calls return the same id"""
        lab_request = await self.get_lab_request(lab_request_id)
        if lab_request.sample_id:
            return lab_request

        problem = self._check_collectable(lab_request)
        if problem:
            raise BusinessLogicError(message=problem, details={"lab_request_id": lab_request_id})

        try:
            lab_request.sample_id = await self._assign_sample_id(lab_request)
            lab_request.sample_collected_at = datetime.utcnow()
            lab_request.sample_collected_by = user_id
            await self.request_repo.commit()
        except Exception:
            await self.request_repo.rollback()
            raise

        logger.info(f"Sample {lab_request.sample_id} collected for lab request {lab_request_id}")
        return await self.get_lab_request(lab_request_id)

    async def mark_visit_samples_collected(self, visit_id: int, user_id: Optional[int] = None) -> VisitSampleOutcome:
        """Collect every outstanding sample on a visit; outcomes are independent"""
        await self.get_visit(visit_id)
        outcome = VisitSampleOutcome(visit_id=visit_id)

        # A failed collection rolls back and expires loaded requests, so each is re-read
        request_ids = [r.id for r in await self.request_repo.list_for_visit(visit_id)]
        for lab_request_id in request_ids:
            lab_request = await self.get_lab_request(lab_request_id)
            if not lab_request.valid:
                continue
            if lab_request.sample_id:
                outcome.outcomes.append(SampleOutcome(
                    lab_request_id=lab_request.id, status=ALREADY_COLLECTED, sample_id=lab_request.sample_id
                ))
                continue
            if lab_request.no_sample:
                outcome.outcomes.append(SampleOutcome(lab_request_id=lab_request.id, status=NO_SAMPLE))
                continue
            problem = self._check_collectable(lab_request)
            if problem:
                outcome.outcomes.append(SampleOutcome(
                    lab_request_id=lab_request.id, status=NOT_PAYABLE, message=problem
                ))
                continue

            try:
                collected = await self.mark_sample_collected(lab_request_id, user_id=user_id)
            except BaseCustomException as e:
                logger.warning(f"Sample collection failed for lab request {lab_request_id}: {e.message}")
                outcome.outcomes.append(SampleOutcome(
                    lab_request_id=lab_request_id, status=FAILED, message=e.message
                ))
                continue
            outcome.outcomes.append(SampleOutcome(
                lab_request_id=collected.id, status=COLLECTED, sample_id=collected.sample_id
            ))

        logger.info(f"Visit {visit_id}: {outcome.updated_count} sample(s) marked collected")
        return outcome

    async def regenerate_sample_id(self, lab_request_id: int) -> LabRequest:
        """Explicitly replace the sample id with the generator's next revision"""
        lab_request = await self.get_lab_request(lab_request_id)
        problem = self._check_collectable(lab_request)
        if problem:
            raise BusinessLogicError(message=problem, details={"lab_request_id": lab_request_id})

        try:
            if lab_request.sample_id:
                lab_request.sample_id_revision += 1
            lab_request.sample_id = await self._assign_sample_id(lab_request)
            await self.request_repo.commit()
        except Exception:
            await self.request_repo.rollback()
            raise

        logger.info(f"Regenerated sample id {lab_request.sample_id} for lab request {lab_request_id}")
        return await self.get_lab_request(lab_request_id)

    # ==================== Queues ====================

    async def get_queue(
        self,
        bucket: QueueBucket,
        filters: QueueFilters,
        now: Optional[datetime] = None
    ) -> Tuple[List[VisitQueueItem], int, int]:
        """Classify visits from current persisted state; never cached"""
        bucket = QueueBucket(bucket)
        start, end = filters.window()
        if bucket is QueueBucket.RECEPTION and not filters.has_date:
            start, end = default_reception_window(now)

        visits = await self.visit_repo.get_queue_candidates(
            shift_id=filters.shift_id,
            created_from=start,
            created_to=end,
            search=filters.search,
            main_test_id=filters.main_test_id,
        )
        items = filter_queue([build_queue_item(v) for v in visits], bucket, filters, now=now)
        return paginate(items, filters.page, filters.per_page)
