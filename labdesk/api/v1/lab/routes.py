from datetime import date as Date
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status
from pydantic import ValidationError as PydanticValidationError

from labdesk.api.deps import get_current_user_id, get_lab_service
from labdesk.api.v1.lab.schemas import (
    AuthorizeRequest,
    CommentUpdate,
    ErrorDetail,
    LabRequestBatchCreate,
    LabRequestResponse,
    LabRequestUpdate,
    MainTestResponse,
    PaginationMeta,
    PaymentCreate,
    QueueItemResponse,
    QueueResponse,
    RequestedResultResponse,
    ResetToDefaultResponse,
    ResultEntryResponse,
    ResultFieldUpdate,
    ResultLockUpdate,
    ResultsBatchResponse,
    ResultsBatchSubmit,
    RowErrorResponse,
    SampleOutcomeResponse,
    SuccessResponse,
    VisitCreate,
    VisitResponse,
    VisitSampleCollectionResponse,
)
from labdesk.core.exceptions import ValidationError, error_from_row
from labdesk.domain.lab.queues import PrintStatus, QueueBucket, QueueFilters, buckets_for
from labdesk.domain.lab.service import LabService

router = APIRouter(tags=["Lab"])


# Visit endpoints
@router.post("/visits", response_model=VisitResponse, status_code=status.HTTP_201_CREATED)
async def create_visit(
    visit_in: VisitCreate,
    service: LabService = Depends(get_lab_service)
):
    visit = await service.register_visit(visit_in.model_dump())
    return VisitResponse.model_validate(visit)


@router.post(
    "/visits/{visit_id}/lab-requests-batch",
    response_model=List[LabRequestResponse],
    status_code=status.HTTP_201_CREATED
)
async def add_lab_tests_to_visit(
    visit_id: int,
    batch_in: LabRequestBatchCreate,
    service: LabService = Depends(get_lab_service),
    user_id: Optional[int] = Depends(get_current_user_id)
):
    """Add one request per main test; tests already on the visit are skipped"""
    lab_requests = await service.add_lab_tests_to_visit(
        visit_id, batch_in.main_test_ids, comment=batch_in.comment, user_id=user_id
    )
    return [LabRequestResponse.from_lab_request(r) for r in lab_requests]


@router.get("/visits/{visit_id}/available-lab-tests", response_model=List[MainTestResponse])
async def get_available_lab_tests(
    visit_id: int,
    service: LabService = Depends(get_lab_service)
):
    """Orderable tests not already requested on the visit"""
    main_tests = await service.get_available_lab_tests(visit_id)
    return [MainTestResponse.model_validate(t) for t in main_tests]


@router.get("/visits/{visit_id}/lab-requests", response_model=List[LabRequestResponse])
async def list_lab_requests_for_visit(
    visit_id: int,
    service: LabService = Depends(get_lab_service)
):
    lab_requests = await service.list_lab_requests_for_visit(visit_id)
    return [LabRequestResponse.from_lab_request(r) for r in lab_requests]


@router.post("/visits/{visit_id}/samples/mark-collected", response_model=VisitSampleCollectionResponse)
async def mark_visit_samples_collected(
    visit_id: int,
    service: LabService = Depends(get_lab_service),
    user_id: Optional[int] = Depends(get_current_user_id)
):
    outcome = await service.mark_visit_samples_collected(visit_id, user_id=user_id)
    return VisitSampleCollectionResponse(
        visit_id=outcome.visit_id,
        updated_count=outcome.updated_count,
        outcomes=[SampleOutcomeResponse.model_validate(o) for o in outcome.outcomes],
    )


@router.patch("/visits/{visit_id}/result-lock", response_model=VisitResponse)
async def set_result_lock(
    visit_id: int,
    lock_in: ResultLockUpdate,
    service: LabService = Depends(get_lab_service)
):
    visit = await service.set_result_lock(visit_id, lock_in.result_is_locked)
    return VisitResponse.model_validate(visit)


@router.post("/visits/{visit_id}/lab-report/mark-printed", response_model=VisitResponse)
async def mark_printed(
    visit_id: int,
    service: LabService = Depends(get_lab_service)
):
    visit = await service.mark_printed(visit_id)
    return VisitResponse.model_validate(visit)


# Lab request endpoints
@router.get("/labrequests/{lab_request_id}/for-result-entry", response_model=ResultEntryResponse)
async def get_for_result_entry(
    lab_request_id: int,
    service: LabService = Depends(get_lab_service)
):
    lab_request = await service.get_for_result_entry(lab_request_id)
    return ResultEntryResponse.from_lab_request(lab_request)


@router.post("/labrequests/{lab_request_id}/results", response_model=ResultsBatchResponse)
async def submit_results(
    lab_request_id: int,
    batch_in: ResultsBatchSubmit,
    service: LabService = Depends(get_lab_service),
    user_id: Optional[int] = Depends(get_current_user_id)
):
    """Batch save; rows that fail are reported individually"""
    rows = [r.model_dump(exclude_unset=True) for r in batch_in.results]
    main_test_comment = batch_in.main_test_comment if "main_test_comment" in batch_in.model_fields_set else None

    outcome = await service.submit_results(
        lab_request_id,
        rows,
        main_test_comment=main_test_comment,
        authorize=batch_in.authorize,
        user_id=user_id
    )

    authorization_error = None
    if outcome.authorization_error is not None:
        authorization_error = ErrorDetail(
            error_code=outcome.authorization_error.error_code,
            message=outcome.authorization_error.message,
            details=outcome.authorization_error.details or None,
        )

    return ResultsBatchResponse(
        lab_request_id=lab_request_id,
        saved_child_test_ids=[r.child_test_id for r in outcome.saved],
        unchanged_child_test_ids=outcome.unchanged,
        errors=[RowErrorResponse(**error_from_row(e.child_test_id, e.error)) for e in outcome.errors],
        authorized=outcome.authorized,
        authorization_error=authorization_error,
        result_entry=ResultEntryResponse.from_lab_request(outcome.lab_request),
    )


@router.patch("/labrequests/{lab_request_id}/results/{child_test_id}", response_model=RequestedResultResponse)
async def save_result_field(
    lab_request_id: int,
    child_test_id: int,
    field_in: ResultFieldUpdate,
    service: LabService = Depends(get_lab_service),
    user_id: Optional[int] = Depends(get_current_user_id)
):
    """Write only the fields present in the body"""
    result = await service.save_result_field(
        lab_request_id, child_test_id, field_in.model_dump(exclude_unset=True), user_id=user_id
    )
    return RequestedResultResponse.model_validate(result)


@router.post("/labrequests/{lab_request_id}/authorize", response_model=ResultEntryResponse)
async def authorize_results(
    lab_request_id: int,
    authorize_in: Optional[AuthorizeRequest] = None,
    service: LabService = Depends(get_lab_service),
    user_id: Optional[int] = Depends(get_current_user_id)
):
    child_test_ids = authorize_in.child_test_ids if authorize_in else None
    lab_request = await service.authorize_results(lab_request_id, child_test_ids, user_id=user_id)
    return ResultEntryResponse.from_lab_request(lab_request)


@router.post("/labrequests/{lab_request_id}/unauthorize", response_model=ResultEntryResponse)
async def unauthorize_results(
    lab_request_id: int,
    authorize_in: Optional[AuthorizeRequest] = None,
    service: LabService = Depends(get_lab_service)
):
    child_test_ids = authorize_in.child_test_ids if authorize_in else None
    lab_request = await service.unauthorize_results(lab_request_id, child_test_ids)
    return ResultEntryResponse.from_lab_request(lab_request)


@router.post("/labrequests/{lab_request_id}/reset-to-default", response_model=ResetToDefaultResponse)
async def reset_to_default(
    lab_request_id: int,
    service: LabService = Depends(get_lab_service),
    user_id: Optional[int] = Depends(get_current_user_id)
):
    lab_request, updated_count = await service.reset_to_default(lab_request_id, user_id=user_id)
    return ResetToDefaultResponse(
        updated_count=updated_count,
        result_entry=ResultEntryResponse.from_lab_request(lab_request),
    )


@router.patch("/labrequests/{lab_request_id}/mark-sample-collected", response_model=LabRequestResponse)
async def mark_sample_collected(
    lab_request_id: int,
    service: LabService = Depends(get_lab_service),
    user_id: Optional[int] = Depends(get_current_user_id)
):
    lab_request = await service.mark_sample_collected(lab_request_id, user_id=user_id)
    return LabRequestResponse.from_lab_request(lab_request)


@router.patch("/labrequests/{lab_request_id}/generate-sample-id", response_model=LabRequestResponse)
async def regenerate_sample_id(
    lab_request_id: int,
    service: LabService = Depends(get_lab_service)
):
    lab_request = await service.regenerate_sample_id(lab_request_id)
    return LabRequestResponse.from_lab_request(lab_request)


@router.post("/labrequests/{lab_request_id}/pay", response_model=LabRequestResponse)
async def record_payment(
    lab_request_id: int,
    payment_in: PaymentCreate,
    service: LabService = Depends(get_lab_service)
):
    lab_request = await service.record_payment(lab_request_id, payment_in.amount, payment_in.is_bankak)
    return LabRequestResponse.from_lab_request(lab_request)


@router.put("/labrequests/{lab_request_id}", response_model=LabRequestResponse)
async def update_lab_request(
    lab_request_id: int,
    update_in: LabRequestUpdate,
    service: LabService = Depends(get_lab_service)
):
    lab_request = await service.update_flags(lab_request_id, **update_in.model_dump(exclude_unset=True))
    return LabRequestResponse.from_lab_request(lab_request)


@router.patch("/labrequests/{lab_request_id}/comment", response_model=LabRequestResponse)
async def update_comment(
    lab_request_id: int,
    comment_in: CommentUpdate,
    service: LabService = Depends(get_lab_service)
):
    lab_request = await service.update_comment(lab_request_id, comment_in.comment)
    return LabRequestResponse.from_lab_request(lab_request)


@router.delete("/labrequests/{lab_request_id}", response_model=SuccessResponse)
async def cancel_lab_request(
    lab_request_id: int,
    service: LabService = Depends(get_lab_service)
):
    await service.cancel_lab_request(lab_request_id)
    return SuccessResponse(message=f"Lab request {lab_request_id} cancelled")


# Queue endpoints
@router.get("/lab/queues/{bucket}", response_model=QueueResponse)
async def get_queue(
    bucket: QueueBucket,
    service: LabService = Depends(get_lab_service),
    shift_id: Optional[int] = None,
    date: Optional[Date] = None,
    date_from: Optional[Date] = None,
    date_to: Optional[Date] = None,
    search: Optional[str] = None,
    page: int = Query(1, ge=1),
    per_page: Optional[int] = Query(None, ge=1, le=500),
    main_test_id: Optional[int] = None,
    paid_only: bool = False,
    print_status: Optional[PrintStatus] = None
):
    """Visits in one operational bucket, oldest first"""
    filter_values = dict(
        shift_id=shift_id,
        date=date,
        date_from=date_from,
        date_to=date_to,
        search=search,
        page=page,
        main_test_id=main_test_id,
        paid_only=paid_only,
        print_status=print_status,
    )
    if per_page is not None:
        filter_values["per_page"] = per_page
    try:
        filters = QueueFilters(**filter_values)
    except PydanticValidationError as e:
        raise ValidationError(
            message="Invalid queue filters",
            details={"errors": [error["msg"] for error in e.errors()]}
        )

    items, total, last_page = await service.get_queue(bucket, filters)

    data = []
    for item in items:
        response = QueueItemResponse.model_validate(item)
        response.buckets = [b.value for b in buckets_for(item)]
        data.append(response)

    return QueueResponse(
        data=data,
        meta=PaginationMeta(total=total, page=filters.page, per_page=filters.per_page, last_page=last_page),
    )
