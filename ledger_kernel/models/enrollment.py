"""
Module: ledger_kernel.models.enrollment
Responsibility: ORM persistence for course enrollments, the course-domain
    payment target.
Architecture position: Kernel > Models.

Invariants enforced:
    - paid_amount + remaining_amount == total_amount after every recompute.
    - version is a SQLAlchemy version_id_col: a flush against a stale
      version raises StaleDataError, surfaced as OptimisticLockError.
"""

from decimal import Decimal
from uuid import UUID

from sqlalchemy import Boolean, Index
from sqlalchemy.orm import Mapped, mapped_column

from ledger_kernel.db.base import TrackedBase, UUIDString
from ledger_kernel.domain.targets import Enrollment


class EnrollmentModel(TrackedBase):
    """
    ORM model for a student's enrollment in a course batch.

    Everything below total_amount is derived by
    EnrollmentBalanceCalculator; no other writer touches it.
    """

    __tablename__ = "enrollments"

    __table_args__ = (
        Index("idx_enrollments_student", "student_id"),
        Index("idx_enrollments_batch", "batch_id"),
    )

    student_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    batch_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(nullable=False)

    paid_amount: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    remaining_amount: Mapped[Decimal] = mapped_column(nullable=False)
    admission_fee_amount: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    admission_fee_paid: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    registration_fee_amount: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    registration_fee_paid: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    exam_fee_amount: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    exam_fee_paid: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    version: Mapped[int] = mapped_column(nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}

    def to_dto(self) -> Enrollment:
        return Enrollment(
            id=self.id,
            student_id=self.student_id,
            batch_id=self.batch_id,
            total_amount=self.total_amount,
            paid_amount=self.paid_amount,
            remaining_amount=self.remaining_amount,
            admission_fee_amount=self.admission_fee_amount,
            admission_fee_paid=self.admission_fee_paid,
            registration_fee_amount=self.registration_fee_amount,
            registration_fee_paid=self.registration_fee_paid,
            exam_fee_amount=self.exam_fee_amount,
            exam_fee_paid=self.exam_fee_paid,
            version=self.version,
        )

    def __repr__(self) -> str:
        return f"<EnrollmentModel {self.id} paid={self.paid_amount}/{self.total_amount}>"
