from typing import Optional, List, Dict, Iterable
from datetime import datetime
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, exists, or_
from sqlalchemy.orm import selectinload

from labdesk.domain.lab.models import (
    Visit, MainTest, ChildTest, ChildTestOption, LabRequest, RequestedResult
)


def _request_load_options():
    return (
        selectinload(LabRequest.main_test)
        .selectinload(MainTest.child_tests)
        .selectinload(ChildTest.options),
        selectinload(LabRequest.results),
        selectinload(LabRequest.visit),
    )


class CatalogRepository:
    """Read access to main tests and their child test definitions"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def create_main_test(self, main_test_data: dict, child_tests: Optional[List[dict]] = None) -> MainTest:
        """Create a main test with its child tests and options"""
        main_test = MainTest(**main_test_data)
        for child_data in child_tests or []:
            child_data = dict(child_data)
            options = child_data.pop("options", None) or []
            child = ChildTest(**child_data)
            child.options = [ChildTestOption(name=name) for name in options]
            main_test.child_tests.append(child)

        self.db.add(main_test)
        await self.db.commit()
        return await self.get_main_test(main_test.id)

    async def get_main_test(self, main_test_id: int) -> Optional[MainTest]:
        """Get main test with ordered child tests and options"""
        result = await self.db.execute(
            select(MainTest)
            .options(selectinload(MainTest.child_tests).selectinload(ChildTest.options))
            .where(MainTest.id == main_test_id)
        )
        return result.scalar_one_or_none()

    async def get_main_tests(self, main_test_ids: Iterable[int]) -> List[MainTest]:
        ids = list(main_test_ids)
        if not ids:
            return []
        result = await self.db.execute(
            select(MainTest)
            .options(selectinload(MainTest.child_tests).selectinload(ChildTest.options))
            .where(MainTest.id.in_(ids))
        )
        return list(result.scalars().all())

    async def list_available(self, exclude_ids: Iterable[int] = ()) -> List[MainTest]:
        """Orderable tests, minus the ones given"""
        query = select(MainTest).where(MainTest.available.is_(True))
        excluded = list(exclude_ids)
        if excluded:
            query = query.where(MainTest.id.not_in(excluded))
        result = await self.db.execute(query.order_by(MainTest.main_test_name))
        return list(result.scalars().all())


class VisitRepository:
    """Repository for visit data access operations"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def create(self, visit_data: dict) -> Visit:
        visit = Visit(**visit_data)
        self.db.add(visit)
        await self.db.commit()
        return await self.get_by_id(visit.id)

    async def get_by_id(self, visit_id: int) -> Optional[Visit]:
        """Get visit with its lab requests and their results"""
        result = await self.db.execute(
            select(Visit)
            .options(
                selectinload(Visit.lab_requests).selectinload(LabRequest.results),
                selectinload(Visit.lab_requests).selectinload(LabRequest.main_test),
            )
            .where(Visit.id == visit_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_queue_candidates(
        self,
        shift_id: Optional[int] = None,
        created_from: Optional[datetime] = None,
        created_to: Optional[datetime] = None,
        search: Optional[str] = None,
        main_test_id: Optional[int] = None
    ) -> List[Visit]:
        """Narrow the visits a queue query has to classify.

        Only coarse filters run in SQL; bucket membership is decided on the
        aggregated read model.
        """
        query = select(Visit).options(
            selectinload(Visit.lab_requests).selectinload(LabRequest.results)
        )

        if shift_id is not None:
            query = query.where(Visit.shift_id == shift_id)

        request_conditions = [LabRequest.visit_id == Visit.id, LabRequest.valid.is_(True)]
        if created_from is not None:
            request_conditions.append(LabRequest.created_at >= created_from)
        if created_to is not None:
            request_conditions.append(LabRequest.created_at < created_to)
        if main_test_id is not None:
            request_conditions.append(LabRequest.main_test_id == main_test_id)
        query = query.where(exists().where(*request_conditions))

        if search and search.strip():
            term = search.strip()
            conditions = [
                Visit.patient_name.icontains(term, autoescape=True),
                exists().where(LabRequest.visit_id == Visit.id, LabRequest.sample_id == term),
            ]
            if term.isdigit():
                conditions.append(Visit.id == int(term))
            query = query.where(or_(*conditions))

        result = await self.db.execute(
            query.order_by(Visit.id).execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def save(self, visit: Visit) -> Visit:
        await self.db.commit()
        return await self.get_by_id(visit.id)


class LabRequestRepository:
    """Repository for lab requests and their requested results"""

    def __init__(self, db: AsyncSession):
        self.db = db

    def add_with_results(self, lab_request: LabRequest, results: List[RequestedResult]) -> LabRequest:
        """Stage a request together with one result row per child test"""
        lab_request.results = results
        self.db.add(lab_request)
        return lab_request

    async def get_by_id(self, lab_request_id: int) -> Optional[LabRequest]:
        """Get lab request with test definition, results and visit"""
        result = await self.db.execute(
            select(LabRequest)
            .options(*_request_load_options())
            .where(LabRequest.id == lab_request_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_many(self, lab_request_ids: Iterable[int]) -> List[LabRequest]:
        ids = list(lab_request_ids)
        if not ids:
            return []
        result = await self.db.execute(
            select(LabRequest)
            .options(*_request_load_options())
            .where(LabRequest.id.in_(ids))
            .order_by(LabRequest.id)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def list_for_visit(self, visit_id: int) -> List[LabRequest]:
        result = await self.db.execute(
            select(LabRequest)
            .options(*_request_load_options())
            .where(LabRequest.visit_id == visit_id)
            .order_by(LabRequest.id)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def sample_id_taken(self, sample_id: str, exclude_id: Optional[int] = None) -> bool:
        query = select(LabRequest.id).where(LabRequest.sample_id == sample_id)
        if exclude_id is not None:
            query = query.where(LabRequest.id != exclude_id)
        result = await self.db.execute(query)
        return result.first() is not None

    async def delete(self, lab_request: LabRequest) -> None:
        await self.db.delete(lab_request)
        await self.db.commit()

    async def commit(self) -> None:
        await self.db.commit()

    async def rollback(self) -> None:
        await self.db.rollback()

    @staticmethod
    def results_by_child_test(lab_request: LabRequest) -> Dict[int, RequestedResult]:
        return {result.child_test_id: result for result in lab_request.results}
