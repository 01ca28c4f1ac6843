import os
import shutil
import sys
import tempfile
import unittest
from datetime import date, datetime, timezone
from unittest.mock import patch

# Add src to path
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '../src')))
os.environ.setdefault("FLASK_ENV", "testing")
os.environ.setdefault("LOG_DIR", os.path.join(tempfile.gettempdir(), "campus_gate_test_logs"))

from campus_gate.utils.database import (  # noqa: E402
    Account, AccountState, Course, FeeTerm, Role, close_db, init_db,
)

# 09:00 in Nairobi
MORNING = datetime(2025, 3, 10, 6, 0, tzinfo=timezone.utc)
TODAY = date(2025, 3, 10)
FAR_EXPIRY = date(2099, 12, 31)


class DatabaseTestCase(unittest.TestCase):
    """Fresh SQLite file per test; outbound webhook delivery is stubbed out."""

    def setUp(self):
        self.tmpdir = tempfile.mkdtemp()
        self.db_url = f"sqlite:///{os.path.join(self.tmpdir, 'campus_gate_test.db')}"
        # Scoped registry: each thread gets its own session
        self.Session = init_db(self.db_url)

        self.url_patcher = patch("campus_gate.utils.database.resolve_database_url", return_value=self.db_url)
        self.url_patcher.start()
        self.webhook_patcher = patch("campus_gate.services.notification_service.deliver_webhook",
                                     return_value=False)
        self.mock_webhook = self.webhook_patcher.start()

    def tearDown(self):
        self.webhook_patcher.stop()
        self.url_patcher.stop()
        close_db(self.db_url)
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def fresh_session(self):
        self.Session.expire_all()
        return self.Session

    def make_course(self, name="Diploma in Information Technology", code="DIT"):
        course = Course(name=name, code=code)
        self.Session.add(course)
        self.Session.commit()
        return course

    def make_staff(self, role, email=None, code=None):
        role = Role(role)
        staff = Account(
            role=role.value,
            name=f"{role.value.title()} Officer",
            email=email or f"{role.value}@campus.test",
            account_code=code,
            state=AccountState.ACTIVE.value,
        )
        self.Session.add(staff)
        self.Session.commit()
        return staff

    def make_student(self, admission_number="STD20250001", course=None, state=AccountState.ACTIVE,
                     expiry=FAR_EXPIRY, balance=0.0, email=None, with_fee=True):
        course = course or self.Session.query(Course).first() or self.make_course()
        student = Account(
            role=Role.STUDENT.value,
            name="Jane Wanjiru",
            first_name="Jane",
            last_name="Wanjiru",
            email=email or f"{admission_number.lower()}@students.test",
            admission_number=admission_number,
            course=course,
            level="Level 3",
            state=AccountState(state).value,
        )
        self.Session.add(student)
        self.Session.flush()
        if with_fee:
            self.Session.add(FeeTerm(
                account_id=student.id,
                semester="Semester 1",
                academic_year="2025",
                total_amount=50000.0,
                amount_paid=50000.0 - balance,
                balance=balance,
                status="Paid" if balance <= 0 else "Partial",
                gatepass_expiry_date=expiry,
            ))
        self.Session.commit()
        return student
