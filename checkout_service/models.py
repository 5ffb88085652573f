import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import relationship

from checkout_service.database import Base


def utcnow():
    return datetime.now(timezone.utc)


class OrderStatus:
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"

    TERMINAL = frozenset({CONFIRMED, FAILED})


class Order(Base):
    __tablename__ = "orders"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, index=True, nullable=False)
    total_amount = Column(Integer, nullable=False)   # minor units (paise)
    currency = Column(String, nullable=False, default="INR")
    status = Column(String, nullable=False, default=OrderStatus.PENDING)  # pending | confirmed | failed
    payment_method = Column(String)
    gateway_order_id = Column(String, index=True)    # Razorpay order_...
    gateway_payment_id = Column(String)              # Razorpay pay_...
    failure_reason = Column(String)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    items = relationship("OrderItem", back_populates="order", lazy="selectin")


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String, ForeignKey("orders.id"), index=True, nullable=False)
    course_id = Column(String, nullable=False)
    price = Column(Integer, nullable=False)

    order = relationship("Order", back_populates="items")


class Enrollment(Base):
    __tablename__ = "enrollments"
    __table_args__ = (UniqueConstraint("student_id", "course_id", name="uq_enrollment_student_course"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    student_id = Column(String, index=True, nullable=False)
    course_id = Column(String, nullable=False)
    status = Column(String, nullable=False, default="enrolled")
    progress = Column(Integer, nullable=False, default=0)
    completed_lessons = Column(Integer, nullable=False, default=0)
    enrolled_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
