import pytest

from labdesk.core.config import settings
from labdesk.core.exceptions import (
    AuthorizationError,
    BusinessLogicError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from labdesk.domain.lab.queues import PrintStatus, QueueBucket, QueueFilters
from labdesk.domain.lab.service import (
    ALREADY_COLLECTED,
    COLLECTED,
    FAILED,
    NO_SAMPLE,
    NOT_PAYABLE,
    LabService,
)


class ConstantSampleIdGenerator:
    """Ignores the revision, so every request gets the same id."""

    def generate(self, visit_id: int, lab_request_id: int, revision: int = 0) -> str:
        return "TUBE-1"


def values(lab_request):
    return {r.child_test_id: r.result_value for r in lab_request.results}


async def fill_all(lab_service: LabService, lab_request_id: int, lab_tests: dict) -> None:
    rows = [
        {"child_test_id": lab_tests["hemoglobin"], "result_value": "13"},
        {"child_test_id": lab_tests["wbc"], "result_value": "7"},
        {"child_test_id": lab_tests["blood_group"], "result_value": "O+"},
        {"child_test_id": lab_tests["notes"], "result_value": "Normocytic"},
    ]
    outcome = await lab_service.submit_results(lab_request_id, rows)
    assert outcome.errors == []


@pytest.mark.integration
class TestLabRequests:
    """Adding, listing, paying for and cancelling lab requests."""

    @pytest.mark.asyncio
    async def test_requests_are_seeded_from_defaults(self, lab_service: LabService, cbc_request, lab_tests: dict) -> None:
        lab_request = await lab_service.get_lab_request(cbc_request.id)

        assert len(lab_request.results) == 5
        assert values(lab_request)[lab_tests["hiv"]] == "Negative"
        assert values(lab_request)[lab_tests["hemoglobin"]] is None
        assert all(not r.is_result_authorized for r in lab_request.results)

    @pytest.mark.asyncio
    async def test_duplicates_and_unavailable_tests_are_skipped(
        self, lab_service: LabService, visit, cbc_request, lab_tests: dict
    ) -> None:
        created = await lab_service.add_lab_tests_to_visit(
            visit.id, [lab_tests["cbc"], lab_tests["malaria"], lab_tests["malaria"], lab_tests["unavailable"]]
        )

        assert [r.main_test_id for r in created] == [lab_tests["malaria"]]
        listed = await lab_service.list_lab_requests_for_visit(visit.id)
        assert [r.main_test_id for r in listed] == [lab_tests["cbc"], lab_tests["malaria"]]

    @pytest.mark.asyncio
    async def test_available_tests_exclude_requested_and_unavailable(
        self, lab_service: LabService, visit, cbc_request, lab_tests: dict
    ) -> None:
        available = await lab_service.get_available_lab_tests(visit.id)
        assert [t.id for t in available] == [lab_tests["empty"], lab_tests["malaria"]]

        with pytest.raises(NotFoundError):
            await lab_service.get_available_lab_tests(999999)

    @pytest.mark.asyncio
    async def test_unknown_main_test(self, lab_service: LabService, visit, lab_tests: dict) -> None:
        with pytest.raises(NotFoundError) as exc_info:
            await lab_service.add_lab_tests_to_visit(visit.id, [999999])
        assert exc_info.value.details["main_test_ids"] == [999999]

    @pytest.mark.asyncio
    async def test_unknown_visit(self, lab_service: LabService, lab_tests: dict) -> None:
        with pytest.raises(NotFoundError):
            await lab_service.add_lab_tests_to_visit(424242, [lab_tests["cbc"]])

    @pytest.mark.asyncio
    async def test_payment_marks_request_paid(self, lab_service: LabService, cbc_request) -> None:
        partial = await lab_service.record_payment(cbc_request.id, 60)
        assert partial.amount_paid == 60
        assert not partial.is_paid

        with pytest.raises(BusinessLogicError):
            await lab_service.record_payment(cbc_request.id, 50)

        paid = await lab_service.record_payment(cbc_request.id, 40, is_bankak=True)
        assert paid.is_paid
        assert paid.is_bankak

    @pytest.mark.asyncio
    async def test_cancel_untouched_request(self, lab_service: LabService, visit, cbc_request) -> None:
        await lab_service.cancel_lab_request(cbc_request.id)

        assert await lab_service.list_lab_requests_for_visit(visit.id) == []
        with pytest.raises(NotFoundError):
            await lab_service.get_lab_request(cbc_request.id)

    @pytest.mark.asyncio
    async def test_cannot_cancel_paid_or_entered_request(
        self, lab_service: LabService, visit, cbc_request, lab_tests: dict
    ) -> None:
        await lab_service.save_result_field(cbc_request.id, lab_tests["hemoglobin"], {"result_value": "13"})
        with pytest.raises(BusinessLogicError):
            await lab_service.cancel_lab_request(cbc_request.id)

        malaria = (await lab_service.add_lab_tests_to_visit(visit.id, [lab_tests["malaria"]]))[0]
        await lab_service.record_payment(malaria.id, 10)
        with pytest.raises(BusinessLogicError):
            await lab_service.cancel_lab_request(malaria.id)

    @pytest.mark.asyncio
    async def test_update_flags_and_comment(self, lab_service: LabService, cbc_request) -> None:
        updated = await lab_service.update_flags(cbc_request.id, hidden=True)
        assert updated.hidden
        assert updated.valid

        updated = await lab_service.update_comment(cbc_request.id, "Fasting sample")
        assert updated.comment == "Fasting sample"


@pytest.mark.integration
class TestResultEntry:
    """Field-level and batch result writes."""

    @pytest.mark.asyncio
    async def test_save_field_computes_flag_and_stamps_entry(
        self, lab_service: LabService, cbc_request, lab_tests: dict
    ) -> None:
        row = await lab_service.save_result_field(
            cbc_request.id, lab_tests["hemoglobin"], {"result_value": "17.2"}, user_id=7
        )

        assert row.result_value == "17.2"
        assert row.result_flags == "H"
        assert row.entered_by == 7
        assert row.entered_at is not None

    @pytest.mark.asyncio
    async def test_unchanged_value_is_not_rewritten(
        self, lab_service: LabService, cbc_request, lab_tests: dict
    ) -> None:
        first = await lab_service.save_result_field(cbc_request.id, lab_tests["hemoglobin"], {"result_value": "13"}, user_id=1)
        entered_at = first.entered_at

        again = await lab_service.save_result_field(cbc_request.id, lab_tests["hemoglobin"], {"result_value": "13"}, user_id=2)
        assert again.entered_at == entered_at
        assert again.entered_by == 1

    @pytest.mark.asyncio
    async def test_only_sent_fields_are_written(
        self, lab_service: LabService, cbc_request, lab_tests: dict
    ) -> None:
        await lab_service.save_result_field(cbc_request.id, lab_tests["hemoglobin"], {"result_value": "13"})
        row = await lab_service.save_result_field(
            cbc_request.id, lab_tests["hemoglobin"], {"result_comment": "Hemolysed"}
        )

        assert row.result_value == "13"
        assert row.result_comment == "Hemolysed"

    @pytest.mark.asyncio
    async def test_invalid_value_leaves_row_untouched(
        self, lab_service: LabService, cbc_request, lab_tests: dict
    ) -> None:
        await lab_service.save_result_field(cbc_request.id, lab_tests["hemoglobin"], {"result_value": "13"})

        with pytest.raises(ValidationError):
            await lab_service.save_result_field(cbc_request.id, lab_tests["hemoglobin"], {"result_value": "45"})
        with pytest.raises(ValidationError):
            await lab_service.save_result_field(cbc_request.id, lab_tests["blood_group"], {"result_value": "Z"})

        lab_request = await lab_service.get_lab_request(cbc_request.id)
        assert values(lab_request)[lab_tests["hemoglobin"]] == "13"
        assert values(lab_request)[lab_tests["blood_group"]] is None

    @pytest.mark.asyncio
    async def test_values_are_canonicalized(self, lab_service: LabService, cbc_request, lab_tests: dict) -> None:
        group = await lab_service.save_result_field(cbc_request.id, lab_tests["blood_group"], {"result_value": "o+"})
        hiv = await lab_service.save_result_field(cbc_request.id, lab_tests["hiv"], {"result_value": "positive"})

        assert group.result_value == "O+"
        assert hiv.result_value == "Positive"
        assert hiv.result_flags is None

    @pytest.mark.asyncio
    async def test_unknown_sub_test_conflicts(self, lab_service: LabService, cbc_request, lab_tests: dict) -> None:
        with pytest.raises(ConflictError):
            await lab_service.save_result_field(cbc_request.id, lab_tests["malaria_result"], {"result_value": "Seen"})

    @pytest.mark.asyncio
    async def test_batch_reports_rows_individually(
        self, lab_service: LabService, cbc_request, lab_tests: dict
    ) -> None:
        outcome = await lab_service.submit_results(
            cbc_request.id,
            [
                {"child_test_id": lab_tests["hemoglobin"], "result_value": "9.5"},
                {"child_test_id": lab_tests["wbc"], "result_value": "lots"},
                {"child_test_id": 999999, "result_value": "1"},
                {"child_test_id": lab_tests["hiv"], "result_value": "Negative"},
            ],
            main_test_comment="Repeat in a week",
            authorize=True,
        )

        assert [r.child_test_id for r in outcome.saved] == [lab_tests["hemoglobin"]]
        assert outcome.unchanged == [lab_tests["hiv"]]
        errors = {e.child_test_id: type(e.error) for e in outcome.errors}
        assert errors == {lab_tests["wbc"]: ValidationError, 999999: ConflictError}
        assert not outcome.authorized
        assert isinstance(outcome.authorization_error, AuthorizationError)

        lab_request = outcome.lab_request
        assert lab_request.comment == "Repeat in a week"
        saved = {r.child_test_id: r for r in lab_request.results}
        assert saved[lab_tests["hemoglobin"]].result_value == "9.5"
        assert saved[lab_tests["hemoglobin"]].result_flags == "L"
        assert saved[lab_tests["wbc"]].result_value is None

    @pytest.mark.asyncio
    async def test_concurrent_editors_on_different_sub_tests(
        self, session_factory, cbc_request, lab_tests: dict
    ) -> None:
        async with session_factory() as first_db, session_factory() as second_db:
            first = LabService(first_db)
            second = LabService(second_db)

            # Both load before either writes
            await first.get_for_result_entry(cbc_request.id)
            await second.get_for_result_entry(cbc_request.id)

            await first.save_result_field(cbc_request.id, lab_tests["hemoglobin"], {"result_value": "14"})
            await second.save_result_field(cbc_request.id, lab_tests["wbc"], {"result_value": "8"})

            lab_request = await first.get_lab_request(cbc_request.id)
            assert values(lab_request)[lab_tests["hemoglobin"]] == "14"
            assert values(lab_request)[lab_tests["wbc"]] == "8"


@pytest.mark.integration
class TestAuthorization:
    """Authorization gates and the edit lock it implies."""

    @pytest.mark.asyncio
    async def test_refused_until_every_sub_test_has_a_value(
        self, lab_service: LabService, cbc_request, lab_tests: dict
    ) -> None:
        with pytest.raises(AuthorizationError) as exc_info:
            await lab_service.authorize_results(cbc_request.id)

        missing = set(exc_info.value.details["missing_child_test_ids"])
        assert missing == {lab_tests["hemoglobin"], lab_tests["wbc"], lab_tests["blood_group"], lab_tests["notes"]}

        lab_request = await lab_service.get_lab_request(cbc_request.id)
        assert not any(r.is_result_authorized for r in lab_request.results)

    @pytest.mark.asyncio
    async def test_authorized_rows_refuse_edits_until_unauthorized(
        self, lab_service: LabService, cbc_request, lab_tests: dict
    ) -> None:
        await fill_all(lab_service, cbc_request.id, lab_tests)
        lab_request = await lab_service.authorize_results(cbc_request.id, user_id=4)
        assert all(r.is_result_authorized and r.authorized_by == 4 for r in lab_request.results)

        with pytest.raises(BusinessLogicError) as exc_info:
            await lab_service.save_result_field(cbc_request.id, lab_tests["hemoglobin"], {"result_value": "15"})
        assert exc_info.value.error_code == "RESULT_AUTHORIZED"

        await lab_service.unauthorize_results(cbc_request.id, [lab_tests["hemoglobin"]])
        row = await lab_service.save_result_field(cbc_request.id, lab_tests["hemoglobin"], {"result_value": "15"})
        assert row.result_value == "15"
        assert not row.is_result_authorized

    @pytest.mark.asyncio
    async def test_batch_authorize_when_complete(
        self, lab_service: LabService, cbc_request, lab_tests: dict
    ) -> None:
        await fill_all(lab_service, cbc_request.id, lab_tests)
        outcome = await lab_service.submit_results(cbc_request.id, [], authorize=True)

        assert outcome.authorized
        assert outcome.authorization_error is None
        assert all(r.is_result_authorized for r in outcome.lab_request.results)

    @pytest.mark.asyncio
    async def test_locked_visit_refuses_all_writes(
        self, lab_service: LabService, visit, cbc_request, lab_tests: dict
    ) -> None:
        await lab_service.set_result_lock(visit.id, True)

        with pytest.raises(BusinessLogicError) as exc_info:
            await lab_service.save_result_field(cbc_request.id, lab_tests["hemoglobin"], {"result_value": "13"})
        assert exc_info.value.error_code == "RESULTS_LOCKED"
        with pytest.raises(BusinessLogicError):
            await lab_service.submit_results(cbc_request.id, [{"child_test_id": lab_tests["wbc"], "result_value": "5"}])
        with pytest.raises(BusinessLogicError):
            await lab_service.reset_to_default(cbc_request.id)

        await lab_service.set_result_lock(visit.id, False)
        row = await lab_service.save_result_field(cbc_request.id, lab_tests["hemoglobin"], {"result_value": "13"})
        assert row.result_value == "13"

    @pytest.mark.asyncio
    async def test_reset_to_default_skips_authorized_rows(
        self, lab_service: LabService, cbc_request, lab_tests: dict
    ) -> None:
        await fill_all(lab_service, cbc_request.id, lab_tests)
        await lab_service.authorize_results(cbc_request.id, [lab_tests["hemoglobin"]])

        lab_request, updated = await lab_service.reset_to_default(cbc_request.id)

        assert updated == 3
        reset = values(lab_request)
        assert reset[lab_tests["hemoglobin"]] == "13"
        assert reset[lab_tests["wbc"]] is None
        assert reset[lab_tests["blood_group"]] is None
        assert reset[lab_tests["hiv"]] == "Negative"


@pytest.mark.integration
class TestSampleCollection:
    """Sample id assignment and bulk collection."""

    @pytest.mark.asyncio
    async def test_mark_collected_is_idempotent(self, lab_service: LabService, visit, cbc_request) -> None:
        first = await lab_service.mark_sample_collected(cbc_request.id, user_id=3)
        second = await lab_service.mark_sample_collected(cbc_request.id, user_id=9)

        assert first.sample_id == f"{visit.id}-{cbc_request.id}"
        assert second.sample_id == first.sample_id
        assert second.sample_collected_at == first.sample_collected_at
        assert second.sample_collected_by == 3

    @pytest.mark.asyncio
    async def test_regenerate_bumps_revision(self, lab_service: LabService, visit, cbc_request) -> None:
        await lab_service.mark_sample_collected(cbc_request.id)
        regenerated = await lab_service.regenerate_sample_id(cbc_request.id)

        assert regenerated.sample_id == f"{visit.id}-{cbc_request.id}-R1"
        assert regenerated.sample_id_revision == 1

    @pytest.mark.asyncio
    async def test_payment_gating(self, lab_service: LabService, cbc_request, monkeypatch) -> None:
        monkeypatch.setattr(settings, "SAMPLE_REQUIRES_PAYMENT", True)

        with pytest.raises(BusinessLogicError):
            await lab_service.mark_sample_collected(cbc_request.id)
        lab_request = await lab_service.get_lab_request(cbc_request.id)
        assert lab_request.sample_id is None

        await lab_service.record_payment(cbc_request.id, 100)
        collected = await lab_service.mark_sample_collected(cbc_request.id)
        assert collected.sample_id is not None

    @pytest.mark.asyncio
    async def test_no_sample_request_is_refused(self, lab_service: LabService, cbc_request) -> None:
        await lab_service.update_flags(cbc_request.id, no_sample=True)
        with pytest.raises(BusinessLogicError):
            await lab_service.mark_sample_collected(cbc_request.id)

    @pytest.mark.asyncio
    async def test_bulk_collection_outcomes(
        self, lab_service: LabService, visit, cbc_request, lab_tests: dict, monkeypatch
    ) -> None:
        monkeypatch.setattr(settings, "SAMPLE_REQUIRES_PAYMENT", True)
        malaria, consultation = await lab_service.add_lab_tests_to_visit(
            visit.id, [lab_tests["malaria"], lab_tests["empty"]]
        )
        await lab_service.update_flags(consultation.id, no_sample=True)
        await lab_service.record_payment(malaria.id, 40)
        await lab_service.mark_sample_collected(malaria.id)

        outcome = await lab_service.mark_visit_samples_collected(visit.id)
        statuses = {o.lab_request_id: o.status for o in outcome.outcomes}
        assert statuses == {
            cbc_request.id: NOT_PAYABLE,
            malaria.id: ALREADY_COLLECTED,
            consultation.id: NO_SAMPLE,
        }
        assert outcome.updated_count == 0

        await lab_service.record_payment(cbc_request.id, 100)
        outcome = await lab_service.mark_visit_samples_collected(visit.id, user_id=5)
        statuses = {o.lab_request_id: o.status for o in outcome.outcomes}
        assert statuses[cbc_request.id] == COLLECTED
        assert outcome.updated_count == 1

    @pytest.mark.asyncio
    async def test_generator_that_keeps_colliding_gives_up(
        self, db_session, visit, cbc_request, lab_tests: dict
    ) -> None:
        service = LabService(db_session, sample_id_generator=ConstantSampleIdGenerator())
        visit_id, cbc_id = visit.id, cbc_request.id
        malaria_id = (await service.add_lab_tests_to_visit(visit_id, [lab_tests["malaria"]]))[0].id
        assert (await service.mark_sample_collected(cbc_id)).sample_id == "TUBE-1"

        with pytest.raises(ConflictError):
            await service.mark_sample_collected(malaria_id)
        assert (await service.get_lab_request(malaria_id)).sample_id is None

        outcome = await service.mark_visit_samples_collected(visit_id)
        statuses = {o.lab_request_id: o.status for o in outcome.outcomes}
        assert statuses == {cbc_id: ALREADY_COLLECTED, malaria_id: FAILED}
        assert outcome.updated_count == 0


@pytest.mark.integration
class TestQueues:
    """Bucket membership computed from persisted state."""

    @pytest.fixture
    async def second_visit(self, lab_service: LabService, lab_tests: dict):
        visit = await lab_service.register_visit({"patient_id": 777, "patient_name": "Bilal Osman", "shift_id": 3})
        malaria = (await lab_service.add_lab_tests_to_visit(visit.id, [lab_tests["malaria"]]))[0]
        return visit, malaria

    async def visit_ids(self, lab_service: LabService, bucket: QueueBucket, **filters) -> list:
        items, _, _ = await lab_service.get_queue(bucket, QueueFilters(**filters))
        return [item.visit_id for item in items]

    @pytest.mark.asyncio
    async def test_buckets_follow_result_progress(
        self, lab_service: LabService, visit, cbc_request, second_visit
    ) -> None:
        other, malaria = second_visit
        await lab_service.authorize_results(malaria.id)

        assert await self.visit_ids(lab_service, QueueBucket.PENDING) == [visit.id]
        assert await self.visit_ids(lab_service, QueueBucket.READY_FOR_PRINT) == [other.id]
        assert await self.visit_ids(lab_service, QueueBucket.UNFINISHED) == []
        assert await self.visit_ids(lab_service, QueueBucket.RECEPTION) == [visit.id, other.id]

    @pytest.mark.asyncio
    async def test_partial_authorization_is_unfinished(
        self, lab_service: LabService, visit, cbc_request, lab_tests: dict
    ) -> None:
        await fill_all(lab_service, cbc_request.id, lab_tests)
        await lab_service.authorize_results(cbc_request.id, [lab_tests["wbc"]])

        assert await self.visit_ids(lab_service, QueueBucket.UNFINISHED) == [visit.id]
        assert await self.visit_ids(lab_service, QueueBucket.PENDING) == []

    @pytest.mark.asyncio
    async def test_unauthorizing_moves_back_to_unfinished(
        self, lab_service: LabService, visit, cbc_request, lab_tests: dict
    ) -> None:
        await lab_service.mark_sample_collected(cbc_request.id)
        await fill_all(lab_service, cbc_request.id, lab_tests)
        await lab_service.authorize_results(cbc_request.id)
        assert await self.visit_ids(lab_service, QueueBucket.READY_FOR_PRINT) == [visit.id]

        await lab_service.unauthorize_results(cbc_request.id, [lab_tests["hemoglobin"]])

        assert await self.visit_ids(lab_service, QueueBucket.READY_FOR_PRINT) == []
        assert await self.visit_ids(lab_service, QueueBucket.UNFINISHED) == [visit.id]

    @pytest.mark.asyncio
    async def test_collected_and_invalid_requests_leave_queues(
        self, lab_service: LabService, visit, cbc_request, second_visit
    ) -> None:
        other, malaria = second_visit
        await lab_service.mark_sample_collected(malaria.id)
        assert await self.visit_ids(lab_service, QueueBucket.RECEPTION) == [visit.id]

        await lab_service.update_flags(cbc_request.id, valid=False)
        assert await self.visit_ids(lab_service, QueueBucket.RECEPTION) == []
        assert await self.visit_ids(lab_service, QueueBucket.PENDING) == [other.id]

    @pytest.mark.asyncio
    async def test_paid_and_print_filters(self, lab_service: LabService, second_visit) -> None:
        other, malaria = second_visit
        await lab_service.authorize_results(malaria.id)

        assert await self.visit_ids(lab_service, QueueBucket.READY_FOR_PRINT, paid_only=True) == []
        await lab_service.record_payment(malaria.id, 40)
        assert await self.visit_ids(lab_service, QueueBucket.READY_FOR_PRINT, paid_only=True) == [other.id]

        await lab_service.mark_printed(other.id)
        assert await self.visit_ids(
            lab_service, QueueBucket.READY_FOR_PRINT, print_status=PrintStatus.NOT_PRINTED
        ) == []
        assert await self.visit_ids(
            lab_service, QueueBucket.READY_FOR_PRINT, print_status=PrintStatus.PRINTED
        ) == [other.id]

    @pytest.mark.asyncio
    async def test_search_and_pagination(
        self, lab_service: LabService, visit, cbc_request, second_visit
    ) -> None:
        other, malaria = second_visit
        assert await self.visit_ids(lab_service, QueueBucket.PENDING, search="bilal") == [other.id]
        assert await self.visit_ids(lab_service, QueueBucket.PENDING, search=str(visit.id)) == [visit.id]
        assert await self.visit_ids(lab_service, QueueBucket.PENDING, search="%") == []
        assert await self.visit_ids(lab_service, QueueBucket.PENDING, search="_") == []

        items, total, last_page = await lab_service.get_queue(QueueBucket.PENDING, QueueFilters(per_page=1, page=2))
        assert total == 2
        assert last_page == 2
        assert [item.visit_id for item in items] == [other.id]
