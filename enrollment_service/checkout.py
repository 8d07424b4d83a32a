"""
Enrollment and payment orchestration.

``CheckoutService`` is the only writer of enrollments and payments (apart from
the completion promotion in ``progress``). Purchase reuses a still-payable
gateway order when there is one and otherwise supersedes the pending attempts
with a fresh order. Confirmation is verified by signature and moves the
payment to ``success`` and the enrollment to ``active`` in one transaction,
failing the enrollment's other pending attempts.

Known limitation: a gateway order already captured (``paid``) blocks a new
purchase attempt with ``Conflict`` until its signed callback arrives. If the
browser never delivers that callback, nothing here reconciles it; the payment
stays ``pending`` and has to be confirmed from the gateway dashboard.
"""
import logging
import math
import time
from datetime import datetime, timezone
from typing import Callable, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from enrollment_service import models
from enrollment_service.database import atomic
from enrollment_service.errors import Conflict, Forbidden, InvalidSignature, NotFound, ValidationError
from enrollment_service.gateway import PAID_ORDER_STATE, PAYABLE_ORDER_STATES, PaymentGateway
from enrollment_service.models import EnrollmentStatus, PaymentStatus

logger = logging.getLogger(__name__)

Publisher = Callable[[str, dict], None]

# explicit instructor actions; payment confirmation and completion promotion
# are the only other transitions
INSTRUCTOR_TRANSITIONS = {
    EnrollmentStatus.PENDING: (EnrollmentStatus.CANCELLED,),
    EnrollmentStatus.ACTIVE: (EnrollmentStatus.CANCELLED,),
    EnrollmentStatus.COMPLETED: (),
    EnrollmentStatus.CANCELLED: (),
}

MAX_PAGE_SIZE = 50


def to_minor_units(amount: float) -> int:
    return int(round(amount * 100))


def make_receipt(enrollment_id: int) -> str:
    # razorpay caps receipts at 40 characters
    return f"enr_{str(enrollment_id)[-10:]}_{str(int(time.time() * 1000))[-8:]}"


def require_student(user: models.User, action: str = "make payments"):
    if user.role != models.UserRole.STUDENT:
        raise Forbidden(f"Only students can {action}")


def _now():
    return datetime.now(timezone.utc)


class CheckoutService:
    def __init__(self, db: Session, gateway: PaymentGateway, publisher: Optional[Publisher] = None,
                 currency: str = "INR"):
        self.db = db
        self.gateway = gateway
        self.publisher = publisher
        self.currency = currency

    # -- lookups -------------------------------------------------------------

    def _get_course(self, course_id: int) -> models.Course:
        course = self.db.query(models.Course).filter(models.Course.id == course_id).first()
        if not course:
            raise NotFound("Course not found")
        return course

    def _find_enrollment(self, course_id: int, student_id: int) -> Optional[models.Enrollment]:
        return (
            self.db.query(models.Enrollment)
            .filter(models.Enrollment.course_id == course_id, models.Enrollment.student_id == student_id)
            .first()
        )

    def _publish(self, routing_key: str, event: dict):
        if self.publisher is not None:
            self.publisher(routing_key, event)

    # -- free courses --------------------------------------------------------

    def enroll_free(self, course_id: int, student: models.User) -> models.Enrollment:
        """
        Direct enrollment for a free course: active and paid, no payment record.

        A pending enrollment left from a purchase started before the course
        became free is activated in place and its open attempts are failed.
        """
        require_student(student, "enroll in courses")
        course = self._get_course(course_id)
        if course.status != models.CourseStatus.PUBLISHED:
            raise Forbidden("Course is not available for enrollment")
        if course.price > 0:
            raise ValidationError("This course requires payment, create a payment order instead")

        existing = self._find_enrollment(course.id, student.id)
        if existing is not None and existing.status != EnrollmentStatus.PENDING:
            raise Conflict("You are already enrolled in this course")
        if existing is not None:
            with atomic(self.db):
                self._activate_enrollment(existing.id)
                superseded = self._supersede_pending(existing.id)
            self.db.refresh(existing)
            logger.info("Activated pending enrollment=%s for now free course=%s (failed %s pending)",
                        existing.id, course.id, superseded)
            return existing

        enrollment = models.Enrollment(
            course_id=course.id,
            student_id=student.id,
            status=EnrollmentStatus.ACTIVE,
            is_paid=True,
        )
        try:
            with atomic(self.db):
                self.db.add(enrollment)
        except IntegrityError as e:
            raise Conflict("You are already enrolled in this course") from e
        self.db.refresh(enrollment)
        logger.info("Enrolled student=%s in free course=%s enrollment=%s", student.id, course.id, enrollment.id)
        return enrollment

    # -- purchase ------------------------------------------------------------

    def initiate_purchase(self, course_id: int, student: models.User) -> dict:
        require_student(student)
        course = self._get_course(course_id)
        if course.price <= 0:
            raise ValidationError("This course is free")
        if course.status != models.CourseStatus.PUBLISHED:
            raise Forbidden("Course is not available for purchase")

        try:
            return self._initiate(course, student)
        except IntegrityError:
            # a concurrent request created the enrollment first; reuse it
            logger.info("Enrollment race for course=%s student=%s, retrying with existing row", course.id, student.id)
        try:
            return self._initiate(course, student)
        except IntegrityError as e:
            raise Conflict("Enrollment is being modified by another request, please retry") from e

    def _initiate(self, course: models.Course, student: models.User) -> dict:
        amount_minor = to_minor_units(course.price)
        with atomic(self.db):
            enrollment = self._find_enrollment(course.id, student.id)
            if enrollment is None:
                enrollment = models.Enrollment(
                    course_id=course.id,
                    student_id=student.id,
                    status=EnrollmentStatus.PENDING,
                    is_paid=False,
                )
                self.db.add(enrollment)
                self.db.flush()
            elif enrollment.status in EnrollmentStatus.ENROLLED:
                raise Conflict("You are already enrolled in this course")
            elif enrollment.status == EnrollmentStatus.CANCELLED:
                raise Conflict("This enrollment was cancelled and cannot be purchased again")

            payment, order = self._reusable_order(enrollment, amount_minor)
            if payment is None:
                superseded = self._supersede_pending(enrollment.id)
                order = self.gateway.create_order(
                    amount_minor,
                    self.currency,
                    receipt=make_receipt(enrollment.id),
                    notes={
                        "course_id": str(course.id),
                        "student_id": str(student.id),
                        "enrollment_id": str(enrollment.id),
                    },
                )
                payment = models.Payment(
                    enrollment_id=enrollment.id,
                    student_id=student.id,
                    course_id=course.id,
                    gateway_order_id=order["id"],
                    amount=course.price,
                    currency=order.get("currency") or self.currency,
                    status=PaymentStatus.PENDING,
                )
                self.db.add(payment)
                self.db.flush()
                logger.info(
                    "Created payment id=%s order=%s enrollment=%s (superseded %s pending)",
                    payment.id, order["id"], enrollment.id, superseded,
                )
            else:
                logger.info("Reusing payment id=%s order=%s enrollment=%s", payment.id, order["id"], enrollment.id)

            result = {
                "order_id": order["id"],
                "amount": order["amount"],
                "currency": order.get("currency") or self.currency,
                "key": self.gateway.key_id,
                "enrollment_id": enrollment.id,
                "payment_id": payment.id,
            }
        return result

    def _reusable_order(self, enrollment: models.Enrollment, amount_minor: int):
        """Latest pending attempt whose remote order can still be paid at the current price."""
        payment = (
            self.db.query(models.Payment)
            .filter(models.Payment.enrollment_id == enrollment.id, models.Payment.status == PaymentStatus.PENDING)
            .order_by(models.Payment.id.desc())
            .first()
        )
        if payment is None or not payment.gateway_order_id:
            return None, None

        order = self.gateway.fetch_order(payment.gateway_order_id)
        if order["status"] == PAID_ORDER_STATE:
            raise Conflict("A payment for this course was captured and is awaiting confirmation")
        if order["status"] in PAYABLE_ORDER_STATES and order["amount"] == amount_minor:
            return payment, order
        return None, None

    def _supersede_pending(self, enrollment_id: int, keep: Optional[int] = None) -> int:
        q = self.db.query(models.Payment).filter(
            models.Payment.enrollment_id == enrollment_id, models.Payment.status == PaymentStatus.PENDING
        )
        if keep is not None:
            q = q.filter(models.Payment.id != keep)
        return q.update({models.Payment.status: PaymentStatus.FAILED}, synchronize_session=False)

    # -- confirmation --------------------------------------------------------

    def confirm_payment(self, order_id: str, payment_id: str, signature: str) -> dict:
        if not order_id or not payment_id or not signature:
            raise ValidationError("Missing Razorpay payment details")

        payment = self.db.query(models.Payment).filter(models.Payment.gateway_order_id == order_id).first()
        if not payment:
            raise NotFound("Payment record not found")

        result = {"enrollment_id": payment.enrollment_id, "payment_id": payment.id, "already_verified": True}
        if payment.status == PaymentStatus.SUCCESS:
            logger.info("Payment id=%s already verified", payment.id)
            return result

        if not self.gateway.verify_signature(order_id, payment_id, signature):
            with atomic(self.db):
                self._not_yet_successful(payment.id).update(
                    {models.Payment.status: PaymentStatus.FAILED}, synchronize_session=False
                )
            logger.warning("Invalid signature for payment id=%s order=%s", result["payment_id"], order_id)
            self._publish("payment.events.failed", {
                "type": "PaymentFailed",
                "payload": {"payment_id": result["payment_id"], "enrollment_id": result["enrollment_id"]},
            })
            raise InvalidSignature("Invalid payment signature")

        with atomic(self.db):
            # conditional transition: a concurrent duplicate callback claims it only once
            claimed = self._not_yet_successful(payment.id).update(
                {
                    models.Payment.status: PaymentStatus.SUCCESS,
                    models.Payment.gateway_payment_id: payment_id,
                    models.Payment.paid_at: _now(),
                },
                synchronize_session=False,
            )
            if claimed:
                self._activate_enrollment(result["enrollment_id"])
                self._supersede_pending(result["enrollment_id"], keep=result["payment_id"])

        if not claimed:
            logger.info("Payment id=%s confirmed concurrently by another request", result["payment_id"])
            return result

        logger.info("Payment id=%s verified, enrollment=%s active", result["payment_id"], result["enrollment_id"])
        self._publish("payment.events.confirmed", {
            "type": "PaymentConfirmed",
            "payload": {"payment_id": result["payment_id"], "enrollment_id": result["enrollment_id"]},
        })
        result["already_verified"] = False
        return result

    def _not_yet_successful(self, payment_pk: int):
        return self.db.query(models.Payment).filter(
            models.Payment.id == payment_pk, models.Payment.status != PaymentStatus.SUCCESS
        )

    def _activate_enrollment(self, enrollment_id: int):
        # conditional on the stored row: concurrent activations of one
        # enrollment serialise on its row lock and only the first changes it
        activated = (
            self.db.query(models.Enrollment)
            .filter(
                models.Enrollment.id == enrollment_id,
                models.Enrollment.status.not_in(EnrollmentStatus.TERMINAL),
                models.Enrollment.is_paid.is_(False),
            )
            .update(
                {models.Enrollment.status: EnrollmentStatus.ACTIVE, models.Enrollment.is_paid: True},
                synchronize_session=False,
            )
        )
        if activated:
            return

        enrollment = self.db.query(models.Enrollment).filter(models.Enrollment.id == enrollment_id).first()
        if not enrollment:
            raise NotFound("Enrollment not found")
        if enrollment.status in EnrollmentStatus.TERMINAL:
            raise Conflict(f"Cannot activate a {enrollment.status} enrollment")
        raise Conflict("Enrollment is already paid by another payment")

    # -- instructor actions and listings -------------------------------------

    def update_enrollment_status(self, enrollment_id: int, status: str, actor: models.User) -> models.Enrollment:
        if status not in EnrollmentStatus.ALL:
            raise ValidationError("Invalid enrollment status")

        enrollment = self.db.query(models.Enrollment).filter(models.Enrollment.id == enrollment_id).first()
        if not enrollment:
            raise NotFound("Enrollment not found")
        course = self._get_course(enrollment.course_id)
        if course.instructor_id != actor.id:
            raise Forbidden("You are not allowed to update this enrollment")

        current = enrollment.status
        if status not in INSTRUCTOR_TRANSITIONS[current]:
            raise Conflict(f'Cannot change enrollment status from "{current}" to "{status}"')

        with atomic(self.db):
            enrollment.status = status
            self._supersede_pending(enrollment.id)
        self.db.refresh(enrollment)
        logger.info("Enrollment id=%s moved %s -> %s by instructor=%s", enrollment.id, current, status, actor.id)
        self._publish("enrollment.events.cancelled", {
            "type": "EnrollmentCancelled",
            "payload": {"enrollment_id": enrollment.id, "student_id": enrollment.student_id,
                        "course_id": enrollment.course_id},
        })
        return enrollment

    def list_my_enrollments(self, student: models.User):
        require_student(student, "view enrollments")
        return (
            self.db.query(models.Enrollment)
            .filter(
                models.Enrollment.student_id == student.id,
                models.Enrollment.status.in_(EnrollmentStatus.ENROLLED),
            )
            .order_by(models.Enrollment.created_at.desc(), models.Enrollment.id.desc())
            .all()
        )

    def list_course_enrollments(self, course_id: int, actor: models.User, status: Optional[str] = None,
                                page: int = 1, limit: int = 10) -> dict:
        page = page if page > 0 else 1
        limit = min(limit, MAX_PAGE_SIZE) if limit > 0 else 10

        course = self._get_course(course_id)
        if course.instructor_id != actor.id:
            raise Forbidden("You are not allowed to view enrollments for this course")

        q = self.db.query(models.Enrollment).filter(models.Enrollment.course_id == course_id)
        if status in EnrollmentStatus.ALL:
            q = q.filter(models.Enrollment.status == status)
        total = q.count()
        items = (
            q.order_by(models.Enrollment.created_at.desc(), models.Enrollment.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
            .all()
        )
        return {
            "data": items,
            "meta": {"total": total, "page": page, "limit": limit, "total_pages": math.ceil(total / limit)},
        }

    def get_payment(self, payment_pk: int, user: models.User) -> models.Payment:
        payment = self.db.query(models.Payment).filter(models.Payment.id == payment_pk).first()
        if not payment:
            raise NotFound("Payment not found")
        if payment.student_id != user.id and user.role != models.UserRole.ADMIN:
            raise Forbidden("You are not allowed to view this payment")
        return payment

    def list_payments(self, user: models.User, status: Optional[str] = None):
        q = self.db.query(models.Payment).filter(models.Payment.student_id == user.id)
        if status:
            q = q.filter(models.Payment.status == status.lower())
        return q.order_by(models.Payment.created_at.desc(), models.Payment.id.desc()).all()
