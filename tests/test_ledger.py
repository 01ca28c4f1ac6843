import unittest
from datetime import date, datetime, timezone
from unittest.mock import MagicMock

from db_helpers import TODAY, DatabaseTestCase

from campus_gate.exceptions import NotFoundError, ValidationError
from campus_gate.services import finance_service, ledger_service
from campus_gate.utils.database import FeePayment, FeeTerm, Notification


class TestLedgerHelpers(unittest.TestCase):

    def test_balance_is_not_clamped(self):
        print("\nTesting overpayment balance...")
        self.assertEqual(ledger_service.compute_balance(1000, 0, 1500), -500)
        self.assertEqual(ledger_service.compute_balance(1000, 250, 500), 750)

    def test_fee_status_derivation(self):
        def term(balance, paid, due=None):
            fee_term = MagicMock()
            fee_term.balance = balance
            fee_term.amount_paid = paid
            fee_term.due_date = due
            return fee_term

        self.assertEqual(ledger_service.derive_fee_status(term(0, 1000), TODAY), "Paid")
        self.assertEqual(ledger_service.derive_fee_status(term(-50, 1050), TODAY), "Paid")
        self.assertEqual(ledger_service.derive_fee_status(term(500, 0, date(2025, 1, 1)), TODAY), "Overdue")
        self.assertEqual(ledger_service.derive_fee_status(term(500, 500), TODAY), "Partial")
        self.assertEqual(ledger_service.derive_fee_status(term(500, 0), TODAY), "Unpaid")

    def test_gate_day_uses_local_time(self):
        late_utc = datetime(2025, 3, 10, 22, 30, tzinfo=timezone.utc)
        self.assertEqual(ledger_service.gate_today(late_utc), date(2025, 3, 11))

    def test_end_of_day(self):
        end = ledger_service.end_of_day(date(2025, 3, 10))
        self.assertEqual(end, datetime(2025, 3, 10, 20, 59, 59, 999999, tzinfo=timezone.utc))

    def test_parse_date(self):
        self.assertEqual(ledger_service.parse_date("2025-06-30", "x"), date(2025, 6, 30))
        self.assertEqual(ledger_service.parse_date("2025-06-30T00:00:00.000Z", "x"), date(2025, 6, 30))
        self.assertIsNone(ledger_service.parse_date("", "x"))
        with self.assertRaises(ValidationError):
            ledger_service.parse_date("30/06/2025", "gatepassExpiryDate")


class TestFeeRecords(DatabaseTestCase):

    def setUp(self):
        super().setUp()
        self.student = self.make_student(with_fee=False)

    def test_upsert_creates_then_updates_same_term(self):
        details = {"semester": "Semester 2", "academicYear": "2025", "totalAmount": 40000,
                   "amountPaid": 10000, "lastUnpaidBalance": 2500, "gatepassExpiryDate": "2025-08-31"}
        created = ledger_service.upsert_fee_term(self.Session, self.student.id, details, today=TODAY)
        self.Session.commit()
        self.assertEqual(created.balance, 32500)
        self.assertEqual(created.status, "Partial")

        updated = ledger_service.upsert_fee_term(
            self.Session, self.student.id,
            {"semester": "Semester 2", "academicYear": "2025", "amountPaid": 45000}, today=TODAY,
        )
        self.Session.commit()
        self.assertEqual(updated.id, created.id)
        self.assertEqual(updated.balance, -2500)
        self.assertEqual(updated.status, "Paid")
        self.assertEqual(updated.gatepass_expiry_date, date(2025, 8, 31))
        self.assertEqual(self.fresh_session().query(FeeTerm).count(), 1)

    def test_payment_amount_goes_to_history_only(self):
        fee_term = ledger_service.upsert_fee_term(
            self.Session, self.student.id,
            {"semester": "Semester 1", "academicYear": "2025", "totalAmount": 1000, "amountPaid": 300,
             "paymentAmount": 300, "paymentMethod": "M-Pesa"},
        )
        self.Session.commit()
        self.assertEqual(fee_term.amount_paid, 300)
        self.assertEqual(len(fee_term.payments), 1)
        self.assertEqual(fee_term.payments[0].payment_method, "M-Pesa")
        self.assertTrue(fee_term.payments[0].receipt_number.startswith("RCP"))

    def test_upsert_validation(self):
        with self.assertRaises(ValidationError):
            ledger_service.upsert_fee_term(self.Session, self.student.id, {"academicYear": "2025"})
        self.Session.rollback()
        with self.assertRaises(ValidationError):
            ledger_service.upsert_fee_term(self.Session, self.student.id,
                                           {"semester": "S1", "academicYear": "2025", "status": "Waived"})
        self.Session.rollback()
        with self.assertRaises(ValidationError):
            ledger_service.upsert_fee_term(self.Session, self.student.id,
                                           {"semester": "S1", "academicYear": "2025", "totalAmount": "lots"})
        self.Session.rollback()

    def test_save_fee_record_notifies_student(self):
        print("\nTesting finance fee update...")
        result = finance_service.save_fee_record(
            self.student.id,
            {"semester": "Semester 1", "academicYear": "2025", "totalAmount": 20000, "amountPaid": 5000,
             "gatepassExpiryDate": "2025-04-30"},
            session=self.Session,
        )
        self.assertEqual(result["balance"], 15000)
        notice = self.fresh_session().query(Notification).filter_by(recipient_id=self.student.id).one()
        self.assertEqual(notice.title, "Fee Record Updated")
        self.assertIn("KES 15000", notice.message)

    def test_add_payment_moves_balance(self):
        fee = finance_service.save_fee_record(
            self.student.id, {"semester": "Semester 1", "academicYear": "2025", "totalAmount": 20000},
            session=self.Session,
        )
        result = finance_service.add_payment(fee["id"], 12000, payment_method="Bank", session=self.Session)
        self.assertEqual(result["amountPaid"], 12000)
        self.assertEqual(result["balance"], 8000)
        self.assertEqual(result["status"], "Partial")
        self.assertEqual(self.fresh_session().query(FeePayment).count(), 1)

        with self.assertRaises(ValidationError):
            finance_service.add_payment(fee["id"], 0, session=self.Session)
        with self.assertRaises(NotFoundError):
            finance_service.add_payment(9999, 100, session=self.Session)

    def test_fee_records_for_unknown_account(self):
        with self.assertRaises(NotFoundError):
            finance_service.fee_records(9999, session=self.Session)


if __name__ == '__main__':
    unittest.main()
