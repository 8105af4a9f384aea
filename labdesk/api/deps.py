from typing import Optional
from fastapi import Depends, Header
from sqlalchemy.ext.asyncio import AsyncSession

from labdesk.domain.lab.sample_ids import SampleIdGenerator, get_sample_id_generator
from labdesk.domain.lab.service import LabService
from labdesk.infrastructure.database import get_db


async def get_current_user_id(
    x_user_id: Optional[int] = Header(None, alias="X-User-Id")
) -> Optional[int]:
    """Acting user, stamped on entered/authorized/collected columns"""
    return x_user_id


async def get_lab_service(
    db: AsyncSession = Depends(get_db),
    sample_id_generator: SampleIdGenerator = Depends(get_sample_id_generator)
) -> LabService:
    return LabService(db, sample_id_generator=sample_id_generator)
