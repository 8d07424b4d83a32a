from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class EnrollRequest(BaseModel):
    course_id: int


class EnrollmentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    course_id: int
    student_id: int
    status: str
    is_paid: bool
    enrolled_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


class EnrollmentStatusUpdate(BaseModel):
    status: str


class PageMeta(BaseModel):
    total: int
    page: int
    limit: int
    total_pages: int


class EnrollmentPage(BaseModel):
    data: List[EnrollmentOut]
    meta: PageMeta


class PurchaseRequest(BaseModel):
    course_id: int


class PurchaseOut(BaseModel):
    order_id: str
    amount: int  # minor currency unit
    currency: str
    key: str
    enrollment_id: int
    payment_id: int


class PaymentVerifyRequest(BaseModel):
    razorpay_order_id: str = Field(min_length=1)
    razorpay_payment_id: str = Field(min_length=1)
    razorpay_signature: str = Field(min_length=1)


class PaymentVerifyOut(BaseModel):
    enrollment_id: int
    payment_id: int
    already_verified: bool = False


class PaymentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    enrollment_id: int
    student_id: int
    course_id: int
    gateway_order_id: Optional[str] = None
    gateway_payment_id: Optional[str] = None
    amount: float
    currency: str
    status: str
    paid_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


class LessonCompleteRequest(BaseModel):
    lesson_id: int


class ProgressOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    student_id: int
    course_id: int
    lesson_id: int
    completed: bool
    completed_at: Optional[datetime] = None


class CourseProgressOut(BaseModel):
    course_id: int
    status: str
    total_lessons: int
    completed_lessons: int
    progress_percentage: int
