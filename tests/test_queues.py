from datetime import date, datetime, timedelta

import pytest

from labdesk.domain.lab.queues import (
    PrintStatus,
    QueueBucket,
    QueueFilters,
    RequestProgress,
    VisitQueueItem,
    buckets_for,
    filter_queue,
    paginate,
)

NOW = datetime(2026, 3, 10, 12, 0, 0)


def request(lab_request_id, total=3, authorized=0, entered=None, sample_id=None, created_at=NOW, **kwargs):
    return RequestProgress(
        lab_request_id=lab_request_id,
        main_test_id=kwargs.pop("main_test_id", 1),
        created_at=created_at,
        sample_id=sample_id,
        total_results=total,
        entered_results=authorized if entered is None else entered,
        authorized_results=authorized,
        **kwargs,
    )


def visit(visit_id, *requests, name="Patient", **kwargs):
    return VisitQueueItem(
        visit_id=visit_id,
        patient_id=visit_id * 10,
        patient_name=name,
        requests=list(requests),
        **kwargs,
    )


class TestBuckets:

    def test_buckets_overlap(self):
        item = visit(1, request(1, authorized=0), request(2, authorized=1))
        assert set(buckets_for(item, now=NOW)) >= {QueueBucket.PENDING, QueueBucket.UNFINISHED}
        assert QueueBucket.READY_FOR_PRINT not in buckets_for(item, now=NOW)

    def test_ready_for_print_ignores_requests_without_sub_tests(self):
        item = visit(1, request(1, total=2, authorized=2, sample_id="1-1"), request(2, total=0, no_sample=True))
        assert buckets_for(item, now=NOW) == [QueueBucket.READY_FOR_PRINT]

    def test_partly_authorized_request_is_only_unfinished(self):
        item = visit(1, request(1, total=5, authorized=3, entered=5, sample_id="1-1"))
        assert buckets_for(item, now=NOW) == [QueueBucket.UNFINISHED]

    def test_no_sub_tests_anywhere_is_never_ready(self):
        item = visit(1, request(1, total=0, sample_id="1-1"))
        assert buckets_for(item, now=NOW) == []

    def test_invalid_requests_are_ignored(self):
        item = visit(1, request(1, authorized=3, sample_id="1-1"), request(2, authorized=0, valid=False))
        assert buckets_for(item, now=NOW) == [QueueBucket.READY_FOR_PRINT]
        assert item.lab_request_ids == [1]

    def test_reception_needs_an_uncollected_sample_in_window(self):
        fresh = visit(1, request(1))
        collected = visit(2, request(2, sample_id="2-2"))
        no_sample = visit(3, request(3, no_sample=True))
        old = visit(4, request(4, created_at=NOW - timedelta(days=3)))

        assert QueueBucket.RECEPTION in buckets_for(fresh, now=NOW)
        assert QueueBucket.RECEPTION not in buckets_for(collected, now=NOW)
        assert QueueBucket.RECEPTION not in buckets_for(no_sample, now=NOW)
        assert QueueBucket.RECEPTION not in buckets_for(old, now=NOW)


class TestFilterQueue:

    def test_orders_by_oldest_request_then_visit_id(self):
        items = [
            visit(3, request(30, created_at=NOW - timedelta(hours=1))),
            visit(1, request(10, created_at=NOW - timedelta(hours=1))),
            visit(2, request(20, created_at=NOW - timedelta(hours=5))),
        ]
        result = filter_queue(items, QueueBucket.PENDING, QueueFilters(), now=NOW)
        assert [i.visit_id for i in result] == [2, 1, 3]

    def test_search_by_name_visit_id_and_sample_id(self):
        items = [
            visit(7, request(1, sample_id="7-1"), name="Omar Hassan"),
            visit(8, request(2), name="Sara Ali"),
        ]

        def by(term):
            selected = filter_queue(items, QueueBucket.PENDING, QueueFilters(search=term), now=NOW)
            return [i.visit_id for i in selected]

        assert by("hassan") == [7]
        assert by("8") == [8]
        assert by("7-1") == [7]
        assert by("nobody") == []

    def test_paid_only_and_print_status(self):
        paid = visit(1, request(1, authorized=3, is_paid=True), is_printed=True)
        unpaid = visit(2, request(2, authorized=3, is_paid=False))

        filters = QueueFilters(paid_only=True)
        assert [i.visit_id for i in filter_queue([paid, unpaid], QueueBucket.READY_FOR_PRINT, filters, now=NOW)] == [1]

        filters = QueueFilters(print_status=PrintStatus.NOT_PRINTED)
        assert [i.visit_id for i in filter_queue([paid, unpaid], QueueBucket.READY_FOR_PRINT, filters, now=NOW)] == [2]

    def test_date_and_shift_filters(self):
        today = visit(1, request(1, created_at=NOW), shift_id=1)
        yesterday = visit(2, request(2, created_at=NOW - timedelta(days=1)), shift_id=2)

        filters = QueueFilters(date=NOW.date())
        assert [i.visit_id for i in filter_queue([today, yesterday], QueueBucket.PENDING, filters, now=NOW)] == [1]

        filters = QueueFilters(shift_id=2)
        assert [i.visit_id for i in filter_queue([today, yesterday], QueueBucket.PENDING, filters, now=NOW)] == [2]

    def test_explicit_date_overrides_reception_lookback(self):
        old = visit(1, request(1, created_at=NOW - timedelta(days=3)))
        filters = QueueFilters(date=(NOW - timedelta(days=3)).date())
        assert [i.visit_id for i in filter_queue([old], QueueBucket.RECEPTION, filters, now=NOW)] == [1]

    def test_main_test_filter(self):
        items = [visit(1, request(1, main_test_id=5)), visit(2, request(2, main_test_id=6))]
        filters = QueueFilters(main_test_id=6)
        assert [i.visit_id for i in filter_queue(items, QueueBucket.PENDING, filters, now=NOW)] == [2]


def test_filters_reject_inverted_range():
    with pytest.raises(ValueError):
        QueueFilters(date_from=date(2026, 3, 10), date_to=date(2026, 3, 1))


def test_paginate():
    items = [visit(i, request(i)) for i in range(1, 6)]
    page, total, last_page = paginate(items, page=2, per_page=2)
    assert [i.visit_id for i in page] == [3, 4]
    assert total == 5
    assert last_page == 3

    page, total, last_page = paginate([], page=1, per_page=2)
    assert page == [] and total == 0 and last_page == 1


def test_visit_aggregates():
    item = visit(
        1,
        request(1, total=3, authorized=1, entered=2, is_paid=True, created_at=NOW - timedelta(hours=2)),
        request(2, total=2, authorized=0, is_paid=True),
    )
    assert item.test_count == 2
    assert item.total_result_count == 5
    assert item.entered_result_count == 2
    assert item.pending_result_count == 4
    assert item.oldest_request_time == NOW - timedelta(hours=2)
    assert item.all_requests_paid
