import sys
import unittest
from pathlib import Path

APP_DIR = Path(__file__).resolve().parents[1]
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from services.errors import BackendError
from services.workflows import (
    acknowledge_receipt,
    dispose_keys,
    generate_flex_keys,
    key_overview,
    open_loan,
    order_extra_keys,
    preview_flex,
    preview_transfer,
    receive_flex_keys,
    receive_order_events,
    remove_loan,
    return_items,
    switch_items,
)
from fakes import FakeKeysBackend


class Clock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


class OpenLoanWorkflowTests(unittest.TestCase):
    def setUp(self):
        self.backend = FakeKeysBackend()
        self.backend.add_key("k1")
        self.backend.add_key("k2", sequence=2, disposed=True)
        self.backend.add_key("k3", sequence=3)
        self.backend.add_card("c1")

    def test_plain_loan(self):
        result = open_loan(self.backend, "R-100", ["k1"], ["c1"], "T-1")
        self.assertTrue(result.success)
        self.assertEqual(result.data["loan"]["keyIds"], ["k1"])
        self.assertTrue(result.data["receiptId"])
        self.assertEqual(self.backend.operations(), ["create_loan"])

    def test_transfer_leaves_one_open_loan_without_disposed_keys(self):
        self.backend.add_loan("l1", ["k1", "k2"], contact="T-1")
        result = open_loan(self.backend, "R-100", ["k3"], [], "T-1")

        self.assertTrue(result.success)
        self.assertEqual(self.backend.operations(), ["return_loan", "create_loan"])
        self.assertIsNotNone(self.backend.loans["l1"]["returnedAt"])
        open_loans = [loan for loan in self.backend.loans.values() if loan["returnedAt"] is None]
        self.assertEqual(len(open_loans), 1)
        self.assertEqual(open_loans[0]["keyIds"], ["k1", "k3"])
        self.assertIn("2 total (1 new + 1 transferred)", result.message)

    def test_conflict_reports_backend_reason(self):
        self.backend.add_loan("l1", ["k1"], contact="T-9")
        result = open_loan(self.backend, "R-100", ["k1"], [], "T-1")
        self.assertFalse(result.success)
        self.assertEqual(result.status_code, 409)
        self.assertEqual(result.failed_step, "create loan")

    def test_failure_after_return_keeps_earlier_steps(self):
        self.backend.add_loan("l1", ["k1"], contact="T-1")
        self.backend.add_loan("l2", ["k3"], contact="T-9")
        result = open_loan(self.backend, "R-100", ["k3"], [], "T-1")
        self.assertFalse(result.success)
        self.assertEqual(result.failed_step, "create transferred loan")
        self.assertEqual(result.data["saga"]["completedSteps"], ["return existing loans"])
        self.assertIsNotNone(self.backend.loans["l1"]["returnedAt"])

    def test_validation_failure_makes_no_backend_writes(self):
        result = open_loan(self.backend, "R-100", [], [], "T-1")
        self.assertFalse(result.success)
        self.assertEqual(result.status_code, 400)
        self.assertEqual(self.backend.operations(), [])

    def test_disposed_key_does_not_return_existing_loan(self):
        self.backend.add_loan("l1", ["k1"], contact="T-1")
        result = open_loan(self.backend, "R-100", ["k2"], [], "T-1")
        self.assertFalse(result.success)
        self.assertEqual(result.message, "Disposed keys cannot be loaned: k2")
        self.assertEqual(self.backend.operations(), [])
        self.assertIsNone(self.backend.loans["l1"]["returnedAt"])

    def test_overview_rows_are_sorted_with_status(self):
        self.backend.add_key("p1", key_name="P", key_type="PB")
        self.backend.add_loan("l1", ["k1"], contact="T-1")
        rows = key_overview(self.backend, "R-100", ["T-1"])
        self.assertEqual([row["id"] for row in rows], ["k1", "k3", "p1"])
        self.assertEqual(rows[0]["status"], "LOANED_TO_TENANT")
        self.assertEqual(rows[0]["loanId"], "l1")
        self.assertTrue(rows[1]["available"])

    def test_preview_lists_transferable_items(self):
        self.backend.add_loan("l1", ["k1", "k2"], ["c1"], contact="T-1")
        preview = preview_transfer(self.backend, "R-100", ["T-1"])
        self.assertEqual(preview["carriedKeyIds"], ["k1"])
        self.assertEqual(preview["disposedKeyIds"], ["k2"])
        self.assertEqual(self.backend.operations(), [])


class ReturnWorkflowTests(unittest.TestCase):
    def setUp(self):
        self.backend = FakeKeysBackend()
        self.backend.add_key("k1")
        self.backend.add_key("k2", sequence=2)
        self.backend.add_loan("l1", ["k1", "k2"], contact="T-1")

    def test_partial_selection_returns_whole_loan(self):
        result = return_items(self.backend, "R-100", ["k1"], [])
        self.assertTrue(result.success)
        self.assertIsNotNone(self.backend.loans["l1"]["returnedAt"])
        self.assertEqual(result.data["missingKeyIds"], ["k2"])
        self.assertIn("1 item(s) recorded as missing", result.message)

    def test_switch_reopens_with_present_items(self):
        result = switch_items(self.backend, "R-100", ["k1", "k2"], [], selected_for_receipt=["k2"])
        self.assertTrue(result.success)
        open_loans = [loan for loan in self.backend.loans.values() if loan["returnedAt"] is None]
        self.assertEqual([loan["keyIds"] for loan in open_loans], [["k2"]])
        self.assertEqual(open_loans[0]["contact"], "T-1")

    def test_unloaned_item_is_rejected(self):
        self.backend.add_key("k3", sequence=3)
        result = return_items(self.backend, "R-100", ["k3"], [])
        self.assertFalse(result.success)
        self.assertEqual(self.backend.operations(), [])


class DisposalWorkflowTests(unittest.TestCase):
    def setUp(self):
        self.backend = FakeKeysBackend()
        self.backend.add_key("k1")
        self.backend.add_loan("l1", ["k1"])
        self.clock = Clock()

    def test_disposal_keeps_loan_and_can_be_undone(self):
        disposal = dispose_keys(self.backend, "R-100", ["k1"], undo_seconds=10, clock=self.clock)
        self.assertTrue(disposal.result.success)
        self.assertTrue(self.backend.keys["k1"]["disposed"])
        self.assertIsNone(self.backend.loans["l1"]["returnedAt"])

        self.clock.now += 5
        undone = disposal.undo.undo()
        self.assertTrue(undone.success)
        self.assertFalse(self.backend.keys["k1"]["disposed"])

        again = disposal.undo.undo()
        self.assertFalse(again.success)

    def test_undo_expires(self):
        disposal = dispose_keys(self.backend, "R-100", ["k1"], undo_seconds=10, clock=self.clock)
        self.clock.now += 11
        result = disposal.undo.undo()
        self.assertFalse(result.success)
        self.assertIn("expired", result.message)
        self.assertTrue(self.backend.keys["k1"]["disposed"])

    def test_failed_disposal_has_no_undo(self):
        self.backend.failures["update_key"] = BackendError("key is locked")
        disposal = dispose_keys(self.backend, "R-100", ["k1"], clock=self.clock)
        self.assertFalse(disposal.result.success)
        self.assertIsNone(disposal.undo)


class FlexWorkflowTests(unittest.TestCase):
    def setUp(self):
        self.backend = FakeKeysBackend()
        self.backend.add_key("a1", sequence=1, flex=1)
        self.backend.add_key("a2", sequence=2, flex=1)
        self.backend.add_loan("l1", ["a1"], contact="T-1")

    def test_preview_does_not_write(self):
        preview = preview_flex(self.backend, "R-100", ["a1", "a2"], counts={"LGH-1-LGH": 2})
        self.assertTrue(preview["canGenerate"])
        self.assertEqual(preview["totalKeys"], 2)
        self.assertEqual(self.backend.operations(), [])

    def test_generate_then_receive_retires_old_generation(self):
        generated = generate_flex_keys(self.backend, "R-100", ["a1", "a2"], counts={"LGH-1-LGH": 2})
        self.assertTrue(generated.success)
        created = generated.data["createdKeyIds"]
        self.assertEqual(len(created), 2)
        self.assertEqual({self.backend.keys[key_id]["flexNumber"] for key_id in created}, {2})
        flex_events = [event for event in self.backend.events.values() if event["type"] == "FLEX"]
        self.assertEqual(flex_events[0]["keyIds"], created)

        received = receive_flex_keys(self.backend, "R-100")
        self.assertTrue(received.success)
        self.assertEqual(flex_events[0]["status"], "RECEIVED")
        self.assertTrue(self.backend.keys["a1"]["disposed"])
        self.assertTrue(self.backend.keys["a2"]["disposed"])
        self.assertEqual(received.data["closedLoanIds"], ["l1"])
        self.assertIsNotNone(self.backend.loans["l1"]["returnedAt"])

        again = receive_flex_keys(self.backend, "R-100")
        self.assertTrue(again.success)
        self.assertEqual(again.message, "No incoming flex keys to receive")

    def test_receiving_flex_closes_every_loan_left_with_disposed_keys(self):
        self.backend.add_loan("l2", ["a2"], contact="T-2")
        generate_flex_keys(self.backend, "R-100", ["a1", "a2"], counts={"LGH-1-LGH": 2})

        received = receive_flex_keys(self.backend, "R-100")
        self.assertTrue(received.success)
        self.assertEqual(sorted(received.data["closedLoanIds"]), ["l1", "l2"])
        self.assertIsNotNone(self.backend.loans["l1"]["returnedAt"])
        self.assertIsNotNone(self.backend.loans["l2"]["returnedAt"])

    def test_second_generation_before_receipt_is_rejected(self):
        first = generate_flex_keys(self.backend, "R-100", ["a1", "a2"], counts={"LGH-1-LGH": 2})
        self.assertTrue(first.success)

        second = generate_flex_keys(self.backend, "R-100", ["a1", "a2"], counts={"LGH-1-LGH": 2})
        self.assertFalse(second.success)
        self.assertIn("has not been received yet", second.message)
        self.assertEqual(self.backend.operations().count("create_key"), 2)
        live = sorted(
            (key["flexNumber"], key["keySequenceNumber"])
            for key in self.backend.keys.values()
            if key["flexNumber"] == 2 and not key["disposed"]
        )
        self.assertEqual(live, [(2, 1), (2, 2)])

    def test_order_event_failure_does_not_fail_generation(self):
        self.backend.failures["create_flex_order_event"] = BackendError("event store down")
        result = generate_flex_keys(self.backend, "R-100", ["a1"], counts={"LGH-1-LGH": 1})
        self.assertTrue(result.success)
        self.assertEqual(len(result.data["createdKeyIds"]), 1)
        self.assertEqual(len(result.data["saga"]["skippedSteps"]), 1)
        self.assertEqual(self.backend.events, {})

    def test_generation_at_maximum_is_rejected(self):
        self.backend.add_key("z1", key_name="Z", flex=3)
        result = generate_flex_keys(self.backend, "R-100", ["z1"])
        self.assertFalse(result.success)
        self.assertEqual(self.backend.operations(), [])


class OrderWorkflowTests(unittest.TestCase):
    def setUp(self):
        self.backend = FakeKeysBackend()
        self.backend.add_key("k1")

    def test_order_receive_and_activate(self):
        ordered = order_extra_keys(self.backend, "R-100", ["k1"])
        self.assertTrue(ordered.success)
        event = next(iter(self.backend.events.values()))
        self.assertEqual((event["type"], event["status"]), ("ORDER", "ORDERED"))

        received = receive_order_events(self.backend, "R-100")
        self.assertTrue(received.success)
        self.assertEqual(event["status"], "RECEIVED")
        self.assertEqual(receive_order_events(self.backend, "R-100").message, "No incoming keys to receive")

        loan = open_loan(self.backend, "R-100", ["k1"], [], "T-1").data["loan"]
        activated = acknowledge_receipt(self.backend, loan["id"])
        self.assertTrue(activated.success)
        self.assertIsNotNone(activated.data["loan"]["pickedUpAt"])
        self.assertEqual(event["status"], "COMPLETED")

    def test_remove_loan_rules(self):
        self.backend.add_loan("active", ["k1"])
        self.backend.add_loan("pending", [], picked_up=False)
        refused = remove_loan(self.backend, "active")
        self.assertFalse(refused.success)
        self.assertEqual(refused.status_code, 409)
        self.assertTrue(remove_loan(self.backend, "pending").success)
        self.assertNotIn("pending", self.backend.loans)

    def test_returned_loan_cannot_be_activated(self):
        self.backend.add_loan("done", ["k1"], returned=True)
        result = acknowledge_receipt(self.backend, "done")
        self.assertFalse(result.success)


if __name__ == "__main__":
    unittest.main()
