import io
import sys
import unittest
from contextlib import redirect_stdout
from datetime import datetime
from pathlib import Path

from sqlalchemy import create_engine, text
from sqlalchemy.pool import StaticPool

APP_DIR = Path(__file__).resolve().parents[1]
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from db.base import Base
from models import key_models  # noqa: F401
from scripts import keys_overview


class KeysOverviewTests(unittest.TestCase):
    def setUp(self):
        self.engine = create_engine(
            "sqlite+pysqlite:///:memory:",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
            future=True,
        )
        Base.metadata.create_all(self.engine)

    def tearDown(self):
        self.engine.dispose()

    def _insert_key(self, conn, key_id, sequence=1):
        conn.execute(
            text(
                "INSERT INTO Keys (KeyID, RentalObjectCode, KeyName, KeyType, KeySequenceNumber, FlexNumber, Disposed, CreatedAt, UpdatedAt) "
                "VALUES (:id, 'R-1', 'A', 'LGH', :seq, 1, 0, :now, :now)"
            ),
            {"id": key_id, "seq": sequence, "now": datetime(2026, 3, 1)},
        )

    def _insert_loan(self, conn, loan_id, key_id):
        conn.execute(
            text("INSERT INTO KeyLoans (KeyLoanID, Contact, LoanType, CreatedAt) VALUES (:id, 'T-1', 'TENANT', :now)"),
            {"id": loan_id, "now": datetime(2026, 3, 1)},
        )
        conn.execute(text("INSERT INTO KeyLoanKeys (KeyLoanID, KeyID) VALUES (:loan, :key)"), {"loan": loan_id, "key": key_id})

    def _failed(self):
        return {row.name for row in keys_overview.run_checks(self.engine) if not row.ok}

    def test_clean_schema_passes(self):
        self.assertEqual(self._failed(), set())

    def test_key_in_two_open_loans_is_reported(self):
        with self.engine.begin() as conn:
            self._insert_key(conn, "k1")
            self._insert_loan(conn, "l1", "k1")
            self._insert_loan(conn, "l2", "k1")
        self.assertIn("keys:in_multiple_open_loans", self._failed())

    def test_duplicate_sequence_is_reported(self):
        with self.engine.begin() as conn:
            self._insert_key(conn, "k1", sequence=1)
            self._insert_key(conn, "k2", sequence=1)
        self.assertEqual(self._failed(), {"keys:duplicate_sequence_in_generation"})

    def test_missing_url_exit_code(self):
        with redirect_stdout(io.StringIO()):
            self.assertEqual(keys_overview.main(["--db-url", ""]), 2)


if __name__ == "__main__":
    unittest.main()
