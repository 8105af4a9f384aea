"""
Laboratory Domain Models

Implements the database models for:
- Visits (the grouping key of every queue)
- Test definitions (main tests, child tests and their options)
- Lab requests (one ordered main test on one visit)
- Requested results (one row per child test per lab request)
"""

from sqlalchemy import (
    Column, String, Text, DateTime, Integer, Float, Boolean,
    ForeignKey, UniqueConstraint
)
from sqlalchemy.orm import relationship
from datetime import datetime

from labdesk.infrastructure.database import Base


class Visit(Base):
    """Clinical visit a patient's lab requests hang off"""
    __tablename__ = "visits"

    id = Column(Integer, primary_key=True, autoincrement=True)
    patient_id = Column(Integer, nullable=False, index=True)
    patient_name = Column(String(255), nullable=False)
    shift_id = Column(Integer, nullable=True, index=True)
    result_is_locked = Column(Boolean, default=False, nullable=False)
    is_printed = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    lab_requests = relationship(
        "LabRequest",
        back_populates="visit",
        order_by="LabRequest.id",
        cascade="all, delete-orphan"
    )

    def __repr__(self):
        return f"<Visit(id={self.id}, patient_name='{self.patient_name}')>"


class MainTest(Base):
    """Lab test definition; decomposes into ordered child tests"""
    __tablename__ = "main_tests"

    id = Column(Integer, primary_key=True, autoincrement=True)
    main_test_name = Column(String(255), nullable=False, unique=True)
    container_id = Column(Integer, nullable=True)
    price = Column(Float, default=0.0, nullable=False)
    divided = Column(Boolean, default=False, nullable=False)
    available = Column(Boolean, default=True, nullable=False)

    child_tests = relationship(
        "ChildTest",
        back_populates="main_test",
        order_by=lambda: [ChildTest.test_order, ChildTest.id],
        cascade="all, delete-orphan"
    )

    def __repr__(self):
        return f"<MainTest(id={self.id}, name='{self.main_test_name}')>"


class ChildTest(Base):
    """Sub-test definition with its result shape and reference range"""
    __tablename__ = "child_tests"

    id = Column(Integer, primary_key=True, autoincrement=True)
    main_test_id = Column(Integer, ForeignKey("main_tests.id", ondelete="CASCADE"), nullable=False, index=True)
    child_test_name = Column(String(255), nullable=False)
    low = Column(Float, nullable=True)
    upper = Column(Float, nullable=True)
    defval = Column(Text, nullable=True)
    unit_name = Column(String(64), nullable=True)
    normal_range = Column(Text, nullable=True)
    max = Column(Float, nullable=True)
    lowest = Column(Float, nullable=True)
    test_order = Column(Integer, nullable=True)
    child_group = Column(String(128), nullable=True)

    main_test = relationship("MainTest", back_populates="child_tests")
    options = relationship(
        "ChildTestOption",
        back_populates="child_test",
        order_by="ChildTestOption.id",
        cascade="all, delete-orphan"
    )


class ChildTestOption(Base):
    """Enumerated legal value of an option-based child test"""
    __tablename__ = "child_test_options"

    id = Column(Integer, primary_key=True, autoincrement=True)
    child_test_id = Column(Integer, ForeignKey("child_tests.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(255), nullable=False)

    child_test = relationship("ChildTest", back_populates="options")


class LabRequest(Base):
    """One ordered main test applied to one visit"""
    __tablename__ = "lab_requests"

    id = Column(Integer, primary_key=True, autoincrement=True)
    visit_id = Column(Integer, ForeignKey("visits.id", ondelete="CASCADE"), nullable=False, index=True)
    main_test_id = Column(Integer, ForeignKey("main_tests.id"), nullable=False, index=True)

    hidden = Column(Boolean, default=False, nullable=False)
    no_sample = Column(Boolean, default=False, nullable=False)
    valid = Column(Boolean, default=True, nullable=False)

    # Payment
    price = Column(Float, default=0.0, nullable=False)
    count = Column(Integer, default=1, nullable=False)
    amount_paid = Column(Float, default=0.0, nullable=False)
    discount_per = Column(Float, default=0.0, nullable=False)
    endurance = Column(Float, default=0.0, nullable=False)
    is_bankak = Column(Boolean, default=False, nullable=False)
    is_paid = Column(Boolean, default=False, nullable=False)

    # Sample collection
    sample_id = Column(String(64), nullable=True, unique=True)
    sample_collected_at = Column(DateTime, nullable=True)
    sample_collected_by = Column(Integer, nullable=True)
    sample_id_revision = Column(Integer, default=0, nullable=False)

    comment = Column(Text, nullable=True)
    user_requested = Column(Integer, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    visit = relationship("Visit", back_populates="lab_requests")
    main_test = relationship("MainTest")
    results = relationship(
        "RequestedResult",
        back_populates="lab_request",
        order_by="RequestedResult.id",
        cascade="all, delete-orphan"
    )

    @property
    def net_amount(self) -> float:
        """Amount the patient owes after discount and company endurance"""
        gross = (self.price or 0.0) * (self.count or 1)
        discount = gross * (self.discount_per or 0.0) / 100
        return max(gross - discount - (self.endurance or 0.0), 0.0)

    def __repr__(self):
        return f"<LabRequest(id={self.id}, visit_id={self.visit_id}, main_test_id={self.main_test_id})>"


class RequestedResult(Base):
    """Stored answer for one child test on one lab request"""
    __tablename__ = "requested_results"
    __table_args__ = (
        UniqueConstraint("lab_request_id", "child_test_id", name="uq_requested_result_request_child"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    lab_request_id = Column(Integer, ForeignKey("lab_requests.id", ondelete="CASCADE"), nullable=False, index=True)
    child_test_id = Column(Integer, ForeignKey("child_tests.id"), nullable=False, index=True)

    result_value = Column(Text, nullable=True)
    result_flags = Column(String(8), nullable=True)
    result_comment = Column(Text, nullable=True)

    is_result_authorized = Column(Boolean, default=False, nullable=False)
    authorized_at = Column(DateTime, nullable=True)
    authorized_by = Column(Integer, nullable=True)

    entered_at = Column(DateTime, nullable=True)
    entered_by = Column(Integer, nullable=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    lab_request = relationship("LabRequest", back_populates="results")
    child_test = relationship("ChildTest")

    @property
    def has_value(self) -> bool:
        return self.result_value is not None and self.result_value != ""
