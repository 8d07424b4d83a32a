# enrollment_service/main.py
from typing import List, Optional
import logging

from fastapi import BackgroundTasks, Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.orm import Session

from enrollment_service import config, database, events, models, progress, schemas
from enrollment_service.checkout import CheckoutService
from enrollment_service.errors import Forbidden, ServiceError
from enrollment_service.gateway import PaymentGateway, RazorpayGateway

# logging
logging.basicConfig(level=config.LOG_LEVEL)
logger = logging.getLogger("enrollment-service")

app = FastAPI(title="Enrollment Service")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Startup: initialize DB and the payment gateway client
@app.on_event("startup")
def startup():
    logger.info("Initializing DB and payment gateway...")
    database.init_db(config.DATABASE_URL)
    app.state.gateway = RazorpayGateway(
        config.RAZORPAY_KEY_ID,
        config.RAZORPAY_KEY_SECRET,
        timeout=config.GATEWAY_TIMEOUT_SECONDS,
    )
    logger.info("Startup complete.")


@app.exception_handler(ServiceError)
def service_error_handler(request: Request, exc: ServiceError):
    if exc.status_code >= 500:
        logger.warning("%s on %s %s: %s", exc.kind, request.method, request.url.path, exc.message)
    # events scheduled before the error (e.g. PaymentFailed) still go out
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(),
                        background=getattr(request.state, "background_tasks", None))


def get_db():
    db = database.SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_gateway(request: Request) -> PaymentGateway:
    return request.app.state.gateway


def get_publisher(request: Request, background_tasks: BackgroundTasks):
    # delivery runs after the response is sent
    request.state.background_tasks = background_tasks
    return events.make_publisher(config.RABBITMQ_URL, schedule=background_tasks.add_task)


def get_current_user(x_user_id: Optional[int] = Header(None), db: Session = Depends(get_db)) -> models.User:
    # identity is established upstream; the header carries the authenticated user id
    if x_user_id is None:
        raise Forbidden("Authentication required")
    user = db.query(models.User).filter(models.User.id == x_user_id).first()
    if not user:
        raise Forbidden("Unknown user")
    return user


def get_checkout(db: Session = Depends(get_db), gateway: PaymentGateway = Depends(get_gateway),
                 publisher=Depends(get_publisher)) -> CheckoutService:
    return CheckoutService(db, gateway, publisher=publisher, currency=config.PAYMENT_CURRENCY)


# Root and health endpoints
@app.get("/")
def root():
    return {"service": "Enrollment Service", "status": "running",
            "endpoints": ["/enrollments", "/payments", "/progress", "/docs", "/openapi.json"]}


@app.get("/health")
def health(db: Session = Depends(get_db)):
    try:
        db.execute(text("SELECT 1"))
    except Exception as e:
        logger.exception("Health check failed: %s", e)
        raise HTTPException(status_code=503, detail="Database unreachable")
    return {"status": "ok"}


# Enrollments
@app.post("/enrollments", response_model=schemas.EnrollmentOut, status_code=201)
def enroll(body: schemas.EnrollRequest, user: models.User = Depends(get_current_user),
           checkout: CheckoutService = Depends(get_checkout)):
    enrollment = checkout.enroll_free(body.course_id, user)
    return schemas.EnrollmentOut.model_validate(enrollment)


@app.get("/enrollments/me", response_model=List[schemas.EnrollmentOut])
def my_enrollments(user: models.User = Depends(get_current_user), checkout: CheckoutService = Depends(get_checkout)):
    return [schemas.EnrollmentOut.model_validate(e) for e in checkout.list_my_enrollments(user)]


@app.get("/courses/{course_id}/enrollments", response_model=schemas.EnrollmentPage)
def course_enrollments(course_id: int, status: Optional[str] = Query(None), page: int = Query(1),
                       limit: int = Query(10), user: models.User = Depends(get_current_user),
                       checkout: CheckoutService = Depends(get_checkout)):
    result = checkout.list_course_enrollments(course_id, user, status=status, page=page, limit=limit)
    return {
        "data": [schemas.EnrollmentOut.model_validate(e) for e in result["data"]],
        "meta": result["meta"],
    }


@app.patch("/enrollments/{enrollment_id}/status", response_model=schemas.EnrollmentOut)
def update_enrollment_status(enrollment_id: int, body: schemas.EnrollmentStatusUpdate,
                             user: models.User = Depends(get_current_user),
                             checkout: CheckoutService = Depends(get_checkout)):
    enrollment = checkout.update_enrollment_status(enrollment_id, body.status, user)
    return schemas.EnrollmentOut.model_validate(enrollment)


# Payments
@app.post("/payments/razorpay/order", response_model=schemas.PurchaseOut, status_code=201)
def create_order(body: schemas.PurchaseRequest, user: models.User = Depends(get_current_user),
                 checkout: CheckoutService = Depends(get_checkout)):
    result = checkout.initiate_purchase(body.course_id, user)
    logger.info("Order %s ready for enrollment=%s student=%s", result["order_id"], result["enrollment_id"], user.id)
    return result


# The confirmation is authenticated by its signature, not by the caller
@app.post("/payments/razorpay/verify", response_model=schemas.PaymentVerifyOut)
def verify_payment(body: schemas.PaymentVerifyRequest, checkout: CheckoutService = Depends(get_checkout)):
    return checkout.confirm_payment(body.razorpay_order_id, body.razorpay_payment_id, body.razorpay_signature)


@app.get("/payments", response_model=List[schemas.PaymentOut])
def list_payments(status: Optional[str] = Query(None), user: models.User = Depends(get_current_user),
                  checkout: CheckoutService = Depends(get_checkout)):
    return [schemas.PaymentOut.model_validate(p) for p in checkout.list_payments(user, status=status)]


@app.get("/payments/{payment_id}", response_model=schemas.PaymentOut)
def get_payment(payment_id: int, user: models.User = Depends(get_current_user),
                checkout: CheckoutService = Depends(get_checkout)):
    return schemas.PaymentOut.model_validate(checkout.get_payment(payment_id, user))


# Progress
@app.post("/progress/lessons/complete", response_model=schemas.ProgressOut)
def complete_lesson(body: schemas.LessonCompleteRequest, user: models.User = Depends(get_current_user),
                    db: Session = Depends(get_db)):
    return schemas.ProgressOut.model_validate(progress.mark_lesson_complete(db, user, body.lesson_id))


@app.get("/progress/courses/{course_id}", response_model=schemas.CourseProgressOut)
def course_progress(course_id: int, user: models.User = Depends(get_current_user), db: Session = Depends(get_db),
                    publisher=Depends(get_publisher)):
    return progress.get_course_progress(db, user, course_id, publisher=publisher)
