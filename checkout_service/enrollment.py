import structlog
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from checkout_service.models import Enrollment, Order

logger = structlog.get_logger(component="enrollment")


def enroll(db, student_id: str, course_id: str):
    """Grant course access once per (student, course).

    Returns ``(enrollment, created)``. The unique constraint on the pair
    settles concurrent double submissions: the losing insert is rolled back
    and the winner's row is returned.
    """
    existing = db.query(Enrollment).filter_by(student_id=student_id, course_id=course_id).first()
    if existing:
        return existing, False

    enrollment = Enrollment(student_id=student_id, course_id=course_id)
    db.add(enrollment)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        existing = db.query(Enrollment).filter_by(student_id=student_id, course_id=course_id).one()
        return existing, False

    logger.info("enrollment_created", student_id=student_id, course_id=course_id)
    return enrollment, True


def enroll_order(db, order: Order) -> dict:
    enrolled, already_enrolled = [], []
    for item in order.items:
        _, created = enroll(db, order.user_id, item.course_id)
        (enrolled if created else already_enrolled).append(item.course_id)
    return {"enrolled": enrolled, "already_enrolled": already_enrolled}


def materialize_enrollments(session_factory, order_id: str) -> list:
    """Enroll the buyer of a freshly confirmed order.

    Payment is already settled at this point, so a failure here is logged and
    left for ``POST /orders/{id}/enroll`` rather than reported as a payment error.
    """
    db = session_factory()
    try:
        order = db.get(Order, order_id)
        if order is None:
            return []
        result = enroll_order(db, order)
        return result["enrolled"] + result["already_enrolled"]
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error("enrollment_failed", order_id=order_id, error=str(exc))
        return []
    finally:
        db.close()
