"""
Queue Classifier

Derives the visit-level read model from persisted lab requests and decides
which operational bucket(s) a visit belongs to. Buckets are independent
filters, not a partition: a visit with one untouched request and one
half-authorized request is both pending and unfinished.
"""

from dataclasses import dataclass, field
from datetime import date as Date, datetime, time, timedelta
from typing import Iterable, List, Optional, Tuple
import enum
import math

from pydantic import BaseModel, Field, model_validator

from labdesk.core.config import settings
from labdesk.domain.lab.classifier import is_entered


class QueueBucket(str, enum.Enum):
    """Operational queue a clinical role consumes"""
    RECEPTION = "reception"
    PENDING = "pending"
    UNFINISHED = "unfinished"
    READY_FOR_PRINT = "ready_for_print"


class PrintStatus(str, enum.Enum):
    PRINTED = "printed"
    NOT_PRINTED = "not_printed"


class QueueFilters(BaseModel):
    """Filter shape shared by every bucket query"""
    shift_id: Optional[int] = None
    date: Optional[Date] = None
    date_from: Optional[Date] = None
    date_to: Optional[Date] = None
    search: Optional[str] = None
    page: int = Field(1, ge=1)
    per_page: int = Field(default_factory=lambda: settings.QUEUE_PAGE_SIZE, ge=1, le=500)
    main_test_id: Optional[int] = None
    paid_only: bool = False
    print_status: Optional[PrintStatus] = None

    @model_validator(mode="after")
    def check_date_range(self) -> "QueueFilters":
        if self.date_from and self.date_to and self.date_from > self.date_to:
            raise ValueError("date_from must not be after date_to")
        return self

    @property
    def has_date(self) -> bool:
        return bool(self.date or self.date_from or self.date_to)

    def window(self) -> Tuple[Optional[datetime], Optional[datetime]]:
        """Half-open [start, end) datetime window the caller asked for"""
        if self.date:
            start = datetime.combine(self.date, time.min)
            return start, start + timedelta(days=1)
        start = datetime.combine(self.date_from, time.min) if self.date_from else None
        end = datetime.combine(self.date_to, time.min) + timedelta(days=1) if self.date_to else None
        return start, end


@dataclass
class RequestProgress:
    """Result progress of one lab request"""
    lab_request_id: int
    main_test_id: int
    created_at: datetime
    sample_id: Optional[str] = None
    no_sample: bool = False
    valid: bool = True
    is_paid: bool = False
    total_results: int = 0
    entered_results: int = 0
    authorized_results: int = 0

    @property
    def has_results(self) -> bool:
        return self.total_results > 0

    @property
    def awaiting_sample(self) -> bool:
        return not self.sample_id and not self.no_sample

    @property
    def is_untouched(self) -> bool:
        """Nothing authorized yet"""
        return self.has_results and self.authorized_results == 0

    @property
    def is_partial(self) -> bool:
        return self.has_results and 0 < self.authorized_results < self.total_results

    @property
    def is_fully_authorized(self) -> bool:
        return self.has_results and self.authorized_results == self.total_results


@dataclass
class VisitQueueItem:
    """Visit-level aggregate; recomputed on every fetch, never stored"""
    visit_id: int
    patient_id: int
    patient_name: str
    shift_id: Optional[int] = None
    result_is_locked: bool = False
    is_printed: bool = False
    requests: List[RequestProgress] = field(default_factory=list)

    @property
    def active_requests(self) -> List[RequestProgress]:
        return [r for r in self.requests if r.valid]

    @property
    def lab_request_ids(self) -> List[int]:
        return [r.lab_request_id for r in self.active_requests]

    @property
    def sample_id(self) -> Optional[str]:
        for request in self.active_requests:
            if request.sample_id:
                return request.sample_id
        return None

    @property
    def oldest_request_time(self) -> Optional[datetime]:
        times = [r.created_at for r in self.active_requests]
        return min(times) if times else None

    @property
    def test_count(self) -> int:
        return len(self.active_requests)

    @property
    def total_result_count(self) -> int:
        return sum(r.total_results for r in self.active_requests)

    @property
    def entered_result_count(self) -> int:
        return sum(r.entered_results for r in self.active_requests)

    @property
    def authorized_result_count(self) -> int:
        return sum(r.authorized_results for r in self.active_requests)

    @property
    def pending_result_count(self) -> int:
        return self.total_result_count - self.authorized_result_count

    @property
    def all_requests_paid(self) -> bool:
        active = self.active_requests
        return bool(active) and all(r.is_paid for r in active)


def build_queue_item(visit) -> VisitQueueItem:
    """Aggregate an ORM visit (with requests and results loaded)"""
    requests = []
    for lab_request in visit.lab_requests:
        results = list(lab_request.results)
        requests.append(RequestProgress(
            lab_request_id=lab_request.id,
            main_test_id=lab_request.main_test_id,
            created_at=lab_request.created_at,
            sample_id=lab_request.sample_id,
            no_sample=bool(lab_request.no_sample),
            valid=bool(lab_request.valid),
            is_paid=bool(lab_request.is_paid),
            total_results=len(results),
            entered_results=sum(1 for r in results if is_entered(r.result_value)),
            authorized_results=sum(1 for r in results if r.is_result_authorized),
        ))
    return VisitQueueItem(
        visit_id=visit.id,
        patient_id=visit.patient_id,
        patient_name=visit.patient_name,
        shift_id=visit.shift_id,
        result_is_locked=bool(visit.result_is_locked),
        is_printed=bool(visit.is_printed),
        requests=requests,
    )


def _within(moment: datetime, start: Optional[datetime], end: Optional[datetime]) -> bool:
    if start and moment < start:
        return False
    if end and moment >= end:
        return False
    return True


def is_reception(
    item: VisitQueueItem,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None
) -> bool:
    """Registered in the window and still waiting for at least one sample"""
    return any(
        r.awaiting_sample and _within(r.created_at, start, end)
        for r in item.active_requests
    )


def is_pending(item: VisitQueueItem) -> bool:
    """At least one request with nothing authorized"""
    return any(r.is_untouched for r in item.active_requests)


def is_unfinished(item: VisitQueueItem) -> bool:
    """At least one request with some but not all sub-tests authorized"""
    return any(r.is_partial for r in item.active_requests)


def is_ready_for_print(item: VisitQueueItem) -> bool:
    """Every request that has sub-tests is fully authorized"""
    with_results = [r for r in item.active_requests if r.has_results]
    return bool(with_results) and all(r.is_fully_authorized for r in with_results)


def in_bucket(
    item: VisitQueueItem,
    bucket: QueueBucket,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None
) -> bool:
    bucket = QueueBucket(bucket)
    if bucket is QueueBucket.RECEPTION:
        return is_reception(item, start, end)
    if bucket is QueueBucket.PENDING:
        return is_pending(item)
    if bucket is QueueBucket.UNFINISHED:
        return is_unfinished(item)
    return is_ready_for_print(item)


def buckets_for(item: VisitQueueItem, now: Optional[datetime] = None) -> List[QueueBucket]:
    """Every bucket the visit currently matches, reception over the default lookback"""
    start, end = default_reception_window(now)
    return [bucket for bucket in QueueBucket if in_bucket(item, bucket, start, end)]


def default_reception_window(now: Optional[datetime] = None) -> Tuple[datetime, datetime]:
    now = now or datetime.utcnow()
    # end is exclusive; include requests created exactly now
    return now - timedelta(hours=settings.RECEPTION_LOOKBACK_HOURS), now + timedelta(microseconds=1)


def _matches_search(item: VisitQueueItem, search: Optional[str]) -> bool:
    if not search or not search.strip():
        return True
    needle = search.strip().lower()
    if needle in item.patient_name.lower():
        return True
    if needle.isdigit() and int(needle) == item.visit_id:
        return True
    return any(r.sample_id and needle == r.sample_id.lower() for r in item.active_requests)


def filter_queue(
    items: Iterable[VisitQueueItem],
    bucket: QueueBucket,
    filters: QueueFilters,
    now: Optional[datetime] = None
) -> List[VisitQueueItem]:
    """Apply the bucket predicate and every filter; oldest visits first"""
    start, end = filters.window()
    if QueueBucket(bucket) is QueueBucket.RECEPTION and not filters.has_date:
        start, end = default_reception_window(now)

    selected = []
    for item in items:
        if not item.active_requests:
            continue
        if filters.shift_id is not None and item.shift_id != filters.shift_id:
            continue
        if filters.has_date and not any(_within(r.created_at, start, end) for r in item.active_requests):
            continue
        if filters.main_test_id is not None and not any(
            r.main_test_id == filters.main_test_id for r in item.active_requests
        ):
            continue
        if filters.paid_only and not item.all_requests_paid:
            continue
        if filters.print_status is PrintStatus.PRINTED and not item.is_printed:
            continue
        if filters.print_status is PrintStatus.NOT_PRINTED and item.is_printed:
            continue
        if not _matches_search(item, filters.search):
            continue
        if not in_bucket(item, bucket, start, end):
            continue
        selected.append(item)

    selected.sort(key=lambda i: (i.oldest_request_time or datetime.max, i.visit_id))
    return selected


def paginate(items: List[VisitQueueItem], page: int, per_page: int) -> Tuple[List[VisitQueueItem], int, int]:
    """Slice one page; returns (page items, total, last page)"""
    total = len(items)
    last_page = math.ceil(total / per_page) if total > 0 else 1
    offset = (page - 1) * per_page
    return items[offset:offset + per_page], total, last_page
