from sqlalchemy import (
    create_engine, Column, String, Integer, DateTime, Date, ForeignKey, Boolean, Float, JSON,
    UniqueConstraint, Index,
)
from sqlalchemy.orm import declarative_base, relationship, sessionmaker, scoped_session
from sqlalchemy.exc import OperationalError
import boto3
import enum
import json
import datetime
import threading
from contextlib import contextmanager
from time import sleep
from urllib.parse import urlparse
from campus_gate.config import get_config
from campus_gate.utils.logger import setup_logger

logger = setup_logger(__name__)
config = get_config()
Base = declarative_base()


def utc_now():
    return datetime.datetime.now(datetime.timezone.utc)


def as_utc(value):
    """SQLite drops tzinfo on the way back; treat naive values as UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=datetime.timezone.utc)
    return value


class AccountState(str, enum.Enum):
    DRAFT_ENROLLED = "DraftEnrolled"
    FINANCE_APPROVED = "FinanceApproved"
    ACTIVE = "Active"
    DEACTIVATED = "Deactivated"


class Role(str, enum.Enum):
    STUDENT = "student"
    TEACHER = "teacher"
    FINANCE = "finance"
    ENROLLMENT = "enrollment"
    GATE = "gate"
    ADMIN = "admin"


class FeeStatus(str, enum.Enum):
    UNPAID = "Unpaid"
    PARTIAL = "Partial"
    PAID = "Paid"
    OVERDUE = "Overdue"


class Course(Base):
    __tablename__ = "courses"
    id = Column(Integer, primary_key=True)
    name = Column(String, unique=True, nullable=False)
    code = Column(String, unique=True, nullable=False)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime(timezone=True), default=utc_now)

    def matches(self, value):
        """Gate officers may type either the course code (DIT) or its full name."""
        if not value:
            return False
        value = value.strip().lower()
        return value in (self.name.lower(), self.code.lower())


class Account(Base):
    __tablename__ = "accounts"
    id = Column(Integer, primary_key=True)
    role = Column(String, nullable=False)
    name = Column(String, nullable=False)
    first_name = Column(String, nullable=True)
    last_name = Column(String, nullable=True)
    email = Column(String, unique=True, nullable=False)
    phone = Column(String, nullable=True)
    admission_number = Column(String, unique=True, nullable=True)
    account_code = Column(String, unique=True, nullable=True)
    course_id = Column(Integer, ForeignKey("courses.id"), nullable=True)
    level = Column(String, nullable=True)
    date_of_birth = Column(Date, nullable=True)
    county_of_birth = Column(String, nullable=True)
    state = Column(String, nullable=False, default=AccountState.DRAFT_ENROLLED.value)
    created_by = Column(Integer, ForeignKey("accounts.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)
    version = Column(Integer, nullable=False)

    course = relationship("Course")
    fee_terms = relationship("FeeTerm", back_populates="account", order_by="FeeTerm.id")

    __mapper_args__ = {"version_id_col": version}

    def summary(self):
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "role": self.role,
            "admissionNumber": self.admission_number,
            "accountCode": self.account_code,
            "course": self.course.name if self.course else None,
            "courseCode": self.course.code if self.course else None,
            "level": self.level,
            "state": self.state,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }


class AccountTransition(Base):
    __tablename__ = "account_transitions"
    id = Column(Integer, primary_key=True)
    account_id = Column(Integer, ForeignKey("accounts.id"), nullable=False)
    from_state = Column(String, nullable=True)
    to_state = Column(String, nullable=False)
    acting_role = Column(String, nullable=False)
    acting_account_id = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utc_now)


class FeeTerm(Base):
    __tablename__ = "fee_terms"
    id = Column(Integer, primary_key=True)
    account_id = Column(Integer, ForeignKey("accounts.id"), nullable=False)
    semester = Column(String, nullable=False)
    academic_year = Column(String, nullable=False)
    total_amount = Column(Float, nullable=False, default=0.0)
    amount_paid = Column(Float, nullable=False, default=0.0)
    carried_unpaid_balance = Column(Float, nullable=False, default=0.0)
    carried_from_semester = Column(String, nullable=True)
    carried_from_year = Column(String, nullable=True)
    balance = Column(Float, nullable=False, default=0.0)
    status = Column(String, nullable=False, default=FeeStatus.UNPAID.value)
    due_date = Column(Date, nullable=True)
    gatepass_expiry_date = Column(Date, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    account = relationship("Account", back_populates="fee_terms")
    payments = relationship("FeePayment", back_populates="fee_term", order_by="FeePayment.id")

    __table_args__ = (UniqueConstraint("account_id", "semester", "academic_year", name="uq_fee_term_period"),)

    def to_dict(self):
        return {
            "id": self.id,
            "accountId": self.account_id,
            "semester": self.semester,
            "academicYear": self.academic_year,
            "totalAmount": self.total_amount,
            "amountPaid": self.amount_paid,
            "lastUnpaidBalance": self.carried_unpaid_balance,
            "unpaidBalanceSemester": self.carried_from_semester,
            "unpaidBalanceYear": self.carried_from_year,
            "balance": self.balance,
            "status": self.status,
            "dueDate": self.due_date.isoformat() if self.due_date else None,
            "gatepassExpiryDate": self.gatepass_expiry_date.isoformat() if self.gatepass_expiry_date else None,
            "payments": [p.to_dict() for p in self.payments],
        }


class FeePayment(Base):
    __tablename__ = "fee_payments"
    id = Column(Integer, primary_key=True)
    fee_term_id = Column(Integer, ForeignKey("fee_terms.id"), nullable=False)
    amount = Column(Float, nullable=False)
    paid_at = Column(DateTime(timezone=True), default=utc_now)
    receipt_number = Column(String, nullable=False)
    payment_method = Column(String, nullable=False, default="Cash")
    processed_by = Column(Integer, ForeignKey("accounts.id"), nullable=True)

    fee_term = relationship("FeeTerm", back_populates="payments")

    def to_dict(self):
        return {
            "amount": self.amount,
            "date": as_utc(self.paid_at).isoformat() if self.paid_at else None,
            "receiptNumber": self.receipt_number,
            "paymentMethod": self.payment_method,
            "processedBy": self.processed_by,
        }


class DailyVerificationRecord(Base):
    __tablename__ = "daily_verification_records"
    id = Column(Integer, primary_key=True)
    account_id = Column(Integer, ForeignKey("accounts.id"), nullable=False)
    day = Column(Date, nullable=False)
    verification_count = Column(Integer, nullable=False, default=0)
    issued_code = Column(String(6), nullable=True)
    code_issued_at = Column(DateTime(timezone=True), nullable=True)
    code_consumed_count = Column(Integer, nullable=False, default=0)
    last_verified_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utc_now)
    version = Column(Integer, nullable=False)

    timestamps = relationship(
        "VerificationTimestamp", order_by="VerificationTimestamp.verified_at",
        cascade="all, delete-orphan",
    )
    receipt = relationship("VerificationReceipt", uselist=False, back_populates="record")

    __table_args__ = (UniqueConstraint("account_id", "day", name="uq_daily_record_account_day"),)
    __mapper_args__ = {"version_id_col": version}


class VerificationTimestamp(Base):
    __tablename__ = "verification_timestamps"
    id = Column(Integer, primary_key=True)
    record_id = Column(Integer, ForeignKey("daily_verification_records.id"), nullable=False)
    verified_at = Column(DateTime(timezone=True), nullable=False)


class VerificationReceipt(Base):
    __tablename__ = "verification_receipts"
    id = Column(Integer, primary_key=True)
    record_id = Column(Integer, ForeignKey("daily_verification_records.id"), unique=True, nullable=False)
    account_id = Column(Integer, ForeignKey("accounts.id"), nullable=False)
    admission_number = Column(String, nullable=False)
    verification_code = Column(String(6), nullable=False)
    generated_date = Column(DateTime(timezone=True), default=utc_now)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    is_used = Column(Boolean, default=False)
    used_at = Column(DateTime(timezone=True), nullable=True)

    record = relationship("DailyVerificationRecord", back_populates="receipt")

    def to_dict(self):
        return {
            "id": self.id,
            "admissionNumber": self.admission_number,
            "verificationCode": self.verification_code,
            "generatedDate": as_utc(self.generated_date).isoformat(),
            "expiresAt": as_utc(self.expires_at).isoformat(),
            "isUsed": bool(self.is_used),
            "usedAt": as_utc(self.used_at).isoformat() if self.used_at else None,
        }


class GateVerificationLog(Base):
    __tablename__ = "gate_verification_logs"
    id = Column(Integer, primary_key=True)
    account_id = Column(Integer, ForeignKey("accounts.id"), nullable=False)
    admission_number = Column(String, nullable=False)
    verified_at = Column(DateTime(timezone=True), default=utc_now)
    day = Column(Date, nullable=False)
    verification_time = Column(String, nullable=False)
    outcome = Column(String, nullable=False)
    expiry_date = Column(Date, nullable=True)
    verifications_today = Column(Integer, default=0)
    verified_by = Column(Integer, ForeignKey("accounts.id"), nullable=True)

    account = relationship("Account", foreign_keys=[account_id])

    __table_args__ = (Index("ix_gate_log_day_outcome", "day", "outcome"),)

    def to_dict(self):
        student = self.account
        return {
            "id": self.id,
            "admissionNumber": self.admission_number,
            "verificationDate": as_utc(self.verified_at).isoformat(),
            "verificationTime": self.verification_time,
            "status": self.outcome,
            "expiryDate": self.expiry_date.isoformat() if self.expiry_date else None,
            "verificationsToday": self.verifications_today,
            "verifiedBy": self.verified_by,
            "student": {
                "name": student.name,
                "course": student.course.name if student.course else None,
                "level": student.level,
            } if student else None,
        }


class Notification(Base):
    __tablename__ = "notifications"
    id = Column(Integer, primary_key=True)
    recipient_id = Column(Integer, ForeignKey("accounts.id"), nullable=False)
    sender_id = Column(Integer, ForeignKey("accounts.id"), nullable=True)
    kind = Column(String, nullable=False)
    title = Column(String, nullable=False)
    message = Column(String, nullable=False)
    payload = Column(JSON, nullable=True)
    priority = Column(String, default="medium")
    delivered = Column(Boolean, default=False)
    created_at = Column(DateTime(timezone=True), default=utc_now)


def get_secret(secret_name):
    """Retrieve DB credentials from AWS Secrets Manager with fallback to DATABASE_URL."""
    from botocore.config import Config as BotoConfig

    boto_config = BotoConfig(
        connect_timeout=10,
        read_timeout=10,
        retries={'max_attempts': 1}
    )
    client = boto3.client('secretsmanager', region_name=config.AWS_DEFAULT_REGION, config=boto_config)

    try:
        logger.info(f"Fetching secret {secret_name}...")
        response = client.get_secret_value(SecretId=secret_name)
        logger.info("Secret fetched successfully")
        return json.loads(response['SecretString'])
    except Exception as e:
        logger.warning(f"Secret fetch failed (using fallback DATABASE_URL): {str(e)}")
        parsed = urlparse(config.DATABASE_URL)
        if parsed.scheme.startswith("postgresql"):
            return {
                'username': parsed.username,
                'password': parsed.password,
                'host': parsed.hostname,
                'port': parsed.port or 5432,
                'dbname': parsed.path.lstrip('/')
            }
        raise


def resolve_database_url():
    """DATABASE_URL, unless a secret name is configured."""
    if not config.DB_SECRET_NAME:
        return config.DATABASE_URL

    secret = get_secret(config.DB_SECRET_NAME)
    user = secret.get("username")
    password = secret.get("password")
    host = secret.get("host")
    dbname = secret.get("dbname")
    port = secret.get("port", 5432)

    if not all([user, password, host, dbname]):
        logger.error("Missing DB connection parameters in secret.")
        raise ValueError("Incomplete DB credentials in secret")

    # pg8000 is pure Python, no C extension
    return f"postgresql+pg8000://{user}:{password}@{host}:{port}/{dbname}"


_sessions = {}
_sessions_lock = threading.Lock()


def _create_engine(db_url):
    if db_url.startswith("sqlite"):
        return create_engine(db_url, connect_args={"check_same_thread": False, "timeout": 30})
    return create_engine(
        db_url,
        pool_size=5,
        max_overflow=5,
        pool_timeout=30,
        pool_recycle=1800
    )


def init_db(database_url=None):
    """Return the scoped session for the database, connecting (with retry) on first use."""
    db_url = database_url or resolve_database_url()

    with _sessions_lock:
        if db_url in _sessions:
            return _sessions[db_url]

        logger.info("START: init_db()")
        retries = 3
        for attempt in range(retries):
            try:
                logger.info(f"Connecting to DB (attempt {attempt+1}/{retries})...")
                engine = _create_engine(db_url)
                with engine.connect():
                    logger.info("Database connection successful.")
                Base.metadata.create_all(engine)
                session_factory = sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)
                _sessions[db_url] = scoped_session(session_factory)
                logger.info("END: init_db()")
                return _sessions[db_url]
            except OperationalError as e:
                logger.warning(f"OperationalError: {e}")
                if "too many connections" in str(e) and attempt < retries - 1:
                    sleep(2)
                    continue
                raise


def close_db(database_url=None):
    """Dispose the engine behind a session registry created by init_db()."""
    db_url = database_url or resolve_database_url()
    with _sessions_lock:
        session = _sessions.pop(db_url, None)
    if session is not None:
        session.remove()
        session.get_bind().dispose()


@contextmanager
def session_scope(session=None):
    """Use the caller's session, or open one from init_db() and release it afterwards."""
    if session is not None:
        yield session
        return
    session = init_db()
    try:
        yield session
    finally:
        session.remove()
