from pydantic import BaseModel, ConfigDict, Field
from typing import Optional, List, Dict, Any, Union
from datetime import datetime

from labdesk.domain.lab.classifier import ResultMode, classify_shape
from labdesk.domain.lab.models import LabRequest


# Visits
class VisitCreate(BaseModel):
    patient_id: int
    patient_name: str = Field(..., min_length=1, max_length=255)
    shift_id: Optional[int] = None


class VisitResponse(BaseModel):
    id: int
    patient_id: int
    patient_name: str
    shift_id: Optional[int] = None
    result_is_locked: bool
    is_printed: bool
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ResultLockUpdate(BaseModel):
    result_is_locked: bool


class MainTestResponse(BaseModel):
    id: int
    main_test_name: str
    price: float
    container_id: Optional[int] = None
    divided: bool = False

    model_config = ConfigDict(from_attributes=True)


# Lab requests
class LabRequestBatchCreate(BaseModel):
    """Add main tests to a visit; duplicates of active requests are skipped"""
    main_test_ids: List[int] = Field(..., min_length=1)
    comment: Optional[str] = None


class LabRequestResponse(BaseModel):
    id: int
    visit_id: int
    main_test_id: int
    main_test_name: Optional[str] = None
    hidden: bool
    no_sample: bool
    valid: bool
    price: float
    count: int
    amount_paid: float
    discount_per: float
    endurance: float
    net_amount: float
    is_bankak: bool
    is_paid: bool
    sample_id: Optional[str] = None
    sample_collected_at: Optional[datetime] = None
    sample_id_revision: int
    comment: Optional[str] = None
    result_count: int = 0
    authorized_count: int = 0
    created_at: datetime

    @classmethod
    def from_lab_request(cls, lab_request: LabRequest) -> "LabRequestResponse":
        results = list(lab_request.results)
        return cls(
            id=lab_request.id,
            visit_id=lab_request.visit_id,
            main_test_id=lab_request.main_test_id,
            main_test_name=lab_request.main_test.main_test_name if lab_request.main_test else None,
            hidden=lab_request.hidden,
            no_sample=lab_request.no_sample,
            valid=lab_request.valid,
            price=lab_request.price,
            count=lab_request.count,
            amount_paid=lab_request.amount_paid,
            discount_per=lab_request.discount_per,
            endurance=lab_request.endurance,
            net_amount=lab_request.net_amount,
            is_bankak=lab_request.is_bankak,
            is_paid=lab_request.is_paid,
            sample_id=lab_request.sample_id,
            sample_collected_at=lab_request.sample_collected_at,
            sample_id_revision=lab_request.sample_id_revision,
            comment=lab_request.comment,
            result_count=len(results),
            authorized_count=sum(1 for r in results if r.is_result_authorized),
            created_at=lab_request.created_at,
        )


class LabRequestUpdate(BaseModel):
    hidden: Optional[bool] = None
    no_sample: Optional[bool] = None
    valid: Optional[bool] = None


class CommentUpdate(BaseModel):
    comment: Optional[str] = None


class PaymentCreate(BaseModel):
    amount: float = Field(..., gt=0)
    is_bankak: bool = False


# Result entry
class ChildTestOptionResponse(BaseModel):
    id: int
    name: str

    model_config = ConfigDict(from_attributes=True)


class ChildTestWithResult(BaseModel):
    """One sub-test definition joined with its current stored result"""
    id: int
    main_test_id: int
    child_test_name: str
    low: Optional[float] = None
    upper: Optional[float] = None
    defval: Optional[str] = None
    unit_name: Optional[str] = None
    normal_range: Optional[str] = None
    max: Optional[float] = None
    lowest: Optional[float] = None
    test_order: Optional[int] = None
    child_group: Optional[str] = None
    options: List[ChildTestOptionResponse] = []
    result_mode: ResultMode

    result_id: Optional[int] = None
    result_value: Optional[str] = None
    result_flags: Optional[str] = None
    result_comment: Optional[str] = None
    is_result_authorized: bool = False
    entered_at: Optional[datetime] = None
    entered_by: Optional[int] = None
    authorized_at: Optional[datetime] = None


class ResultEntryResponse(BaseModel):
    lab_request_id: int
    visit_id: int
    main_test_id: int
    main_test_name: str
    comment: Optional[str] = None
    hidden: bool
    valid: bool
    sample_id: Optional[str] = None
    result_is_locked: bool
    child_tests_with_results: List[ChildTestWithResult]

    @classmethod
    def from_lab_request(cls, lab_request: LabRequest) -> "ResultEntryResponse":
        by_child = {r.child_test_id: r for r in lab_request.results}
        rows = []
        for child in lab_request.main_test.child_tests:
            result = by_child.get(child.id)
            rows.append(ChildTestWithResult(
                id=child.id,
                main_test_id=child.main_test_id,
                child_test_name=child.child_test_name,
                low=child.low,
                upper=child.upper,
                defval=child.defval,
                unit_name=child.unit_name,
                normal_range=child.normal_range,
                max=child.max,
                lowest=child.lowest,
                test_order=child.test_order,
                child_group=child.child_group,
                options=[ChildTestOptionResponse.model_validate(o) for o in child.options],
                result_mode=classify_shape(child).mode,
                result_id=result.id if result else None,
                result_value=result.result_value if result else None,
                result_flags=result.result_flags if result else None,
                result_comment=result.result_comment if result else None,
                is_result_authorized=result.is_result_authorized if result else False,
                entered_at=result.entered_at if result else None,
                entered_by=result.entered_by if result else None,
                authorized_at=result.authorized_at if result else None,
            ))

        return cls(
            lab_request_id=lab_request.id,
            visit_id=lab_request.visit_id,
            main_test_id=lab_request.main_test_id,
            main_test_name=lab_request.main_test.main_test_name,
            comment=lab_request.comment,
            hidden=lab_request.hidden,
            valid=lab_request.valid,
            sample_id=lab_request.sample_id,
            result_is_locked=bool(lab_request.visit.result_is_locked) if lab_request.visit else False,
            child_tests_with_results=rows,
        )


ResultValue = Optional[Union[str, bool, float]]


class ResultFieldUpdate(BaseModel):
    """Only the fields actually sent are written"""
    result_value: ResultValue = None
    result_comment: Optional[str] = None


class ResultRowUpdate(ResultFieldUpdate):
    child_test_id: int


class ResultsBatchSubmit(BaseModel):
    results: List[ResultRowUpdate] = []
    main_test_comment: Optional[str] = None
    authorize: bool = False


class RequestedResultResponse(BaseModel):
    id: int
    lab_request_id: int
    child_test_id: int
    result_value: Optional[str] = None
    result_flags: Optional[str] = None
    result_comment: Optional[str] = None
    is_result_authorized: bool
    entered_at: Optional[datetime] = None
    entered_by: Optional[int] = None
    authorized_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class RowErrorResponse(BaseModel):
    child_test_id: int
    error_code: Optional[str] = None
    message: str
    details: Optional[Dict[str, Any]] = None


class ErrorDetail(BaseModel):
    error_code: Optional[str] = None
    message: str
    details: Optional[Dict[str, Any]] = None


class ResultsBatchResponse(BaseModel):
    lab_request_id: int
    saved_child_test_ids: List[int] = []
    unchanged_child_test_ids: List[int] = []
    errors: List[RowErrorResponse] = []
    authorized: bool = False
    authorization_error: Optional[ErrorDetail] = None
    result_entry: ResultEntryResponse


class AuthorizeRequest(BaseModel):
    """Omit child_test_ids to target every sub-test of the request"""
    child_test_ids: Optional[List[int]] = None


class ResetToDefaultResponse(BaseModel):
    updated_count: int
    result_entry: ResultEntryResponse


# Samples
class SampleOutcomeResponse(BaseModel):
    lab_request_id: int
    status: str
    sample_id: Optional[str] = None
    message: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class VisitSampleCollectionResponse(BaseModel):
    visit_id: int
    updated_count: int
    outcomes: List[SampleOutcomeResponse]


# Queues
class QueueItemResponse(BaseModel):
    visit_id: int
    patient_id: int
    patient_name: str
    shift_id: Optional[int] = None
    lab_request_ids: List[int]
    sample_id: Optional[str] = None
    oldest_request_time: Optional[datetime] = None
    test_count: int
    total_result_count: int
    entered_result_count: int
    authorized_result_count: int
    pending_result_count: int
    all_requests_paid: bool
    result_is_locked: bool
    is_printed: bool
    buckets: List[str] = []

    model_config = ConfigDict(from_attributes=True)


class PaginationMeta(BaseModel):
    total: int
    page: int
    per_page: int
    last_page: int


class QueueResponse(BaseModel):
    data: List[QueueItemResponse]
    meta: PaginationMeta


class SuccessResponse(BaseModel):
    message: str
