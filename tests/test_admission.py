import unittest

from db_helpers import FAR_EXPIRY, DatabaseTestCase

from campus_gate.exceptions import (
    DuplicateIdentifierError, InvalidStateError, NotAuthorizedError, ValidationError,
)
from campus_gate.services import admission_service
from campus_gate.utils.database import (
    Account, AccountState, AccountTransition, FeeTerm, Notification,
)


FEE_DETAILS = {
    "semester": "Semester 1",
    "academicYear": "2025",
    "totalAmount": 60000,
    "amountPaid": 45000,
    "gatepassExpiryDate": FAR_EXPIRY.isoformat(),
}


class TestAdmissionPipeline(DatabaseTestCase):

    def setUp(self):
        super().setUp()
        self.course = self.make_course()
        self.enroller = self.make_staff("enrollment")
        self.finance = self.make_staff("finance")
        self.teacher = self.make_staff("teacher")
        self.admin = self.make_staff("admin")

    def enroll(self, **overrides):
        details = {
            "firstName": "Brian",
            "lastName": "Otieno",
            "email": "brian.otieno@students.test",
            "courseCode": "DIT",
            "level": "Level 1",
        }
        details.update(overrides)
        return admission_service.submit_enrollment(details, actor_id=self.enroller.id, session=self.Session)

    def state_of(self, account_id):
        return self.fresh_session().get(Account, account_id).state

    def notifications(self, kind, recipient_id=None):
        query = self.fresh_session().query(Notification).filter_by(kind=kind)
        if recipient_id:
            query = query.filter_by(recipient_id=recipient_id)
        return query.all()

    def test_enrollment_creates_draft_and_notifies_finance(self):
        print("\nTesting enrollment...")
        result = self.enroll()
        student = result["student"]

        self.assertTrue(result["success"])
        self.assertEqual(student["state"], "DraftEnrolled")
        self.assertRegex(student["admissionNumber"], r"^STD\d{8}$")
        self.assertEqual(student["courseCode"], "DIT")
        self.assertEqual(len(self.notifications("enrollment", self.finance.id)), 1)

    def test_enrollment_keeps_supplied_admission_number(self):
        result = self.enroll(admissionNumber="std20250042")
        self.assertEqual(result["student"]["admissionNumber"], "STD20250042")

    def test_duplicate_admission_number_rejected(self):
        self.enroll(admissionNumber="STD20250042")
        with self.assertRaises(DuplicateIdentifierError) as ctx:
            self.enroll(admissionNumber="STD20250042", email="someone.else@students.test")
        self.assertEqual(ctx.exception.field, "admissionNumber")
        self.assertEqual(ctx.exception.http_status, 409)

    def test_duplicate_email_rejected(self):
        self.enroll()
        with self.assertRaises(DuplicateIdentifierError) as ctx:
            self.enroll(email="Brian.Otieno@students.test")
        self.assertEqual(ctx.exception.field, "email")

    def test_enrollment_validation(self):
        with self.assertRaises(ValidationError):
            self.enroll(level="Level 9")
        with self.assertRaises(ValidationError):
            self.enroll(email="not-an-email")
        with self.assertRaises(ValidationError):
            self.enroll(firstName="")

    def test_only_enrollment_role_can_enroll(self):
        with self.assertRaises(NotAuthorizedError):
            admission_service.submit_enrollment(
                {"firstName": "A", "lastName": "B", "email": "a.b@students.test", "courseCode": "DIT",
                 "level": "Level 1"},
                actor_role="teacher", session=self.Session,
            )
        self.assertEqual(self.fresh_session().query(Account).filter_by(role="student").count(), 0)

    def test_full_pipeline(self):
        print("\nTesting enrollment -> finance -> teacher...")
        student_id = self.enroll()["student"]["id"]

        approved = admission_service.approve_finance(student_id, FEE_DETAILS, actor_id=self.finance.id,
                                                     session=self.Session)
        self.assertTrue(approved["changed"])
        self.assertEqual(approved["fee"]["balance"], 15000)
        self.assertEqual(approved["fee"]["status"], "Partial")
        self.assertEqual(self.state_of(student_id), "FinanceApproved")
        self.assertEqual(len(self.notifications("finance_approval", self.teacher.id)), 1)

        activated = admission_service.activate_account(student_id, actor_id=self.teacher.id, session=self.Session)
        self.assertTrue(activated["changed"])
        self.assertEqual(self.state_of(student_id), "Active")

        transitions = self.fresh_session().query(AccountTransition).filter_by(account_id=student_id).order_by(
            AccountTransition.id
        ).all()
        self.assertEqual([t.to_state for t in transitions], ["DraftEnrolled", "FinanceApproved", "Active"])
        self.assertEqual([t.acting_role for t in transitions], ["enrollment", "finance", "teacher"])

    def test_finance_approval_is_idempotent(self):
        student_id = self.enroll()["student"]["id"]
        admission_service.approve_finance(student_id, FEE_DETAILS, session=self.Session)
        again = admission_service.approve_finance(student_id, FEE_DETAILS, session=self.Session)

        self.assertTrue(again["success"])
        self.assertFalse(again["changed"])
        self.assertEqual(self.fresh_session().query(FeeTerm).filter_by(account_id=student_id).count(), 1)
        self.assertEqual(len(self.notifications("finance_approval")), 1)

    def test_finance_approval_requires_expiry_date(self):
        student_id = self.enroll()["student"]["id"]
        details = dict(FEE_DETAILS)
        del details["gatepassExpiryDate"]
        with self.assertRaises(ValidationError):
            admission_service.approve_finance(student_id, details, session=self.Session)
        self.assertEqual(self.state_of(student_id), "DraftEnrolled")

    def test_activation_twice_sends_one_welcome(self):
        print("\nTesting idempotent activation...")
        student_id = self.enroll()["student"]["id"]
        admission_service.approve_finance(student_id, FEE_DETAILS, session=self.Session)

        first = admission_service.activate_account(student_id, session=self.Session)
        second = admission_service.activate_account(student_id, session=self.Session)

        self.assertTrue(first["changed"])
        self.assertFalse(second["changed"])
        self.assertEqual(second["student"]["state"], "Active")
        self.assertEqual(len(self.notifications("activation", student_id)), 1)

    def test_activation_before_finance_is_rejected(self):
        student_id = self.enroll()["student"]["id"]
        with self.assertRaises(InvalidStateError) as ctx:
            admission_service.activate_account(student_id, session=self.Session)

        self.assertEqual(ctx.exception.current_state, "DraftEnrolled")
        self.assertEqual(ctx.exception.requested_state, "Active")
        self.assertEqual(self.state_of(student_id), "DraftEnrolled")
        self.assertEqual(self.fresh_session().query(AccountTransition).filter_by(account_id=student_id).count(), 1)
        self.assertEqual(len(self.notifications("activation")), 0)

    def test_wrong_role_cannot_transition(self):
        student_id = self.enroll()["student"]["id"]
        with self.assertRaises(NotAuthorizedError):
            admission_service.approve_finance(student_id, FEE_DETAILS, actor_role="teacher", session=self.Session)
        with self.assertRaises(NotAuthorizedError):
            admission_service.activate_account(student_id, actor_role="finance", session=self.Session)
        self.assertEqual(self.state_of(student_id), "DraftEnrolled")

    def test_deactivation(self):
        student_id = self.enroll()["student"]["id"]
        with self.assertRaises(InvalidStateError):
            admission_service.deactivate_account(student_id, session=self.Session)

        admission_service.approve_finance(student_id, FEE_DETAILS, session=self.Session)
        admission_service.activate_account(student_id, session=self.Session)
        result = admission_service.deactivate_account(student_id, actor_id=self.admin.id, session=self.Session)
        self.assertTrue(result["changed"])
        self.assertEqual(self.state_of(student_id), "Deactivated")

        with self.assertRaises(InvalidStateError):
            admission_service.approve_finance(student_id, FEE_DETAILS, session=self.Session)
        with self.assertRaises(NotAuthorizedError):
            admission_service.deactivate_account(student_id, actor_role="teacher", session=self.Session)

    def test_pending_queues(self):
        first = self.enroll()["student"]["id"]
        self.enroll(email="second@students.test")
        admission_service.approve_finance(first, FEE_DETAILS, session=self.Session)

        finance_queue = admission_service.pending_accounts(AccountState.DRAFT_ENROLLED, session=self.Session)
        teacher_queue = admission_service.pending_accounts("FinanceApproved", session=self.Session)
        self.assertEqual(len(finance_queue), 1)
        self.assertEqual([s["id"] for s in teacher_queue], [first])
        self.assertEqual(teacher_queue[0]["fee"]["semester"], "Semester 1")

    def test_create_staff_account_codes(self):
        print("\nTesting staff account codes...")
        for role, length in (("teacher", 6), ("gate", 5), ("finance", 7), ("enrollment", 4)):
            result = admission_service.create_staff_account(
                role, f"New {role}", f"new.{role}@campus.test", session=self.Session
            )
            code = result["account"]["accountCode"]
            self.assertEqual(len(code), length)
            self.assertTrue(code.isdigit())
            self.assertEqual(result["account"]["state"], "Active")

        with self.assertRaises(NotAuthorizedError):
            admission_service.create_staff_account("gate", "X", "x@campus.test", actor_role="teacher",
                                                   session=self.Session)
        with self.assertRaises(ValidationError):
            admission_service.create_staff_account("student", "X", "x@campus.test", session=self.Session)
        with self.assertRaises(DuplicateIdentifierError):
            admission_service.create_staff_account("gate", "Dup", "new.gate@campus.test", session=self.Session)

    def test_enrollment_stats(self):
        self.enroll()
        self.enroll(email="second@students.test", level="Level 2")
        stats = admission_service.enrollment_stats(session=self.Session)
        self.assertEqual(stats["totalStudents"], 2)
        self.assertEqual(stats["recentEnrollments"], 2)
        self.assertEqual(stats["studentsByState"], {"DraftEnrolled": 2})


if __name__ == '__main__':
    unittest.main()
