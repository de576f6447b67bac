import sys
import unittest
from pathlib import Path

APP_DIR = Path(__file__).resolve().parents[1]
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from services.errors import RuleValidationError
from services.flex_rules import CREATED_KEYS_CONTEXT, evaluate_flex_groups, plan_flex_generation
from services.inventory import load_inventory
from services.plans import ContextRef
from fakes import FakeKeysBackend


class FlexGroupTests(unittest.TestCase):
    def setUp(self):
        self.backend = FakeKeysBackend()
        self.backend.add_key("a1", key_name="A", sequence=1, flex=1, key_system_id="sys-1")
        self.backend.add_key("a2", key_name="A", sequence=2, flex=1, key_system_id="sys-1")
        self.backend.add_key("b1", key_name="B", key_type="PB", sequence=1, flex=2)
        self.backend.add_key("b2", key_name="B", key_type="PB", sequence=2, flex=3)
        self.backend.add_key("c1", key_name="C", key_type="FS", sequence=1, flex=None)
        self.backend.add_key("d1", key_name="D", key_type="HN", sequence=1, flex=3)
        self.snapshot = load_inventory(self.backend, "R-100")

    def _group(self, groups, label):
        return next(group for group in groups if group.label == label)

    def test_groups_by_name_and_type(self):
        groups = evaluate_flex_groups(self.snapshot, ["a1", "a2", "d1"], max_flex=3, default_count=3)
        a = self._group(groups, "A-LGH")
        self.assertEqual(a.current_flex, 1)
        self.assertEqual(a.next_flex, 2)
        self.assertEqual(a.count, 3)
        self.assertTrue(a.generatable)
        self.assertIn("maximum", self._group(groups, "D-HN").error)

    def test_mixed_flex_numbers_are_an_error(self):
        groups = evaluate_flex_groups(self.snapshot, ["b1", "b2"], max_flex=3)
        self.assertIn("different flex numbers", groups[0].error)
        self.assertFalse(groups[0].generatable)

    def test_missing_flex_needs_baseline(self):
        groups = evaluate_flex_groups(self.snapshot, ["c1"], max_flex=3)
        self.assertIn("baseline", groups[0].error)
        groups = evaluate_flex_groups(self.snapshot, ["c1"], baselines={"C-FS": 0}, max_flex=3)
        self.assertIsNone(groups[0].error)
        self.assertEqual(groups[0].next_flex, 1)

    def test_zero_count_is_not_generatable_but_not_an_error(self):
        groups = evaluate_flex_groups(self.snapshot, ["a1"], counts={"A-LGH": 0}, max_flex=3)
        self.assertIsNone(groups[0].error)
        self.assertFalse(groups[0].generatable)

    def test_negative_count_is_an_error(self):
        groups = evaluate_flex_groups(self.snapshot, ["a1"], counts={"A-LGH": -1}, max_flex=3)
        self.assertIn("Invalid count", groups[0].error)

    def test_live_keys_in_next_generation_block_the_group(self):
        self.backend.add_key("a3", key_name="A", sequence=1, flex=2)
        snapshot = load_inventory(self.backend, "R-100")
        groups = evaluate_flex_groups(snapshot, ["a1", "a2"], max_flex=3)
        self.assertEqual(groups[0].error, "A-LGH already has keys at flex 2")
        self.assertFalse(groups[0].generatable)

    def test_disposed_keys_in_next_generation_do_not_block(self):
        self.backend.add_key("a3", key_name="A", sequence=1, flex=2, disposed=True)
        snapshot = load_inventory(self.backend, "R-100")
        groups = evaluate_flex_groups(snapshot, ["a1", "a2"], max_flex=3)
        self.assertIsNone(groups[0].error)
        self.assertEqual(groups[0].next_flex, 2)

    def test_outstanding_flex_order_blocks_the_group(self):
        self.backend.add_key("a3", key_name="A", sequence=1, flex=2)
        self.backend.add_event("e1", "FLEX", ["a3"])
        snapshot = load_inventory(self.backend, "R-100")
        groups = evaluate_flex_groups(snapshot, ["a1"], max_flex=3)
        self.assertIn("has not been received yet", groups[0].error)

    def test_unknown_key_is_rejected(self):
        with self.assertRaises(RuleValidationError):
            evaluate_flex_groups(self.snapshot, ["missing"], max_flex=3)


class FlexPlanTests(unittest.TestCase):
    def setUp(self):
        self.backend = FakeKeysBackend()
        self.backend.add_key("a1", key_name="A", sequence=1, flex=1, key_system_id="sys-1")
        self.backend.add_key("a2", key_name="A", sequence=2, flex=1, key_system_id="sys-1")
        self.backend.add_key("d1", key_name="D", key_type="HN", sequence=1, flex=3)
        self.snapshot = load_inventory(self.backend, "R-100")

    def test_plan_creates_next_generation_then_records_order(self):
        plan = plan_flex_generation(self.snapshot, ["a1", "a2"], counts={"A-LGH": 2}, max_flex=3)
        operations = [call.operation for call in plan.calls]
        self.assertEqual(operations, ["create_key", "create_key", "create_flex_order_event"])

        first = plan.calls[0].payload["attributes"]
        self.assertEqual(first["keyName"], "A")
        self.assertEqual(first["keySequenceNumber"], 1)
        self.assertEqual(first["flexNumber"], 2)
        self.assertEqual(first["keySystemId"], "sys-1")
        self.assertEqual(plan.calls[1].payload["attributes"]["keySequenceNumber"], 2)
        self.assertTrue(all(call.collect_as == CREATED_KEYS_CONTEXT for call in plan.calls[:2]))

        order = plan.calls[2]
        self.assertTrue(order.supplementary)
        self.assertEqual(order.payload["key_ids"], ContextRef(CREATED_KEYS_CONTEXT))
        self.assertEqual(plan.summary["totalKeys"], 2)

    def test_projection_shows_pending_keys_as_incoming(self):
        plan = plan_flex_generation(self.snapshot, ["a1"], counts={"A-LGH": 1}, max_flex=3)
        pending = [key for key in plan.projected.keys.values() if key.id.startswith("pending-flex-")]
        self.assertEqual(len(pending), 1)
        event = plan.projected.latest_event(pending[0].id)
        self.assertEqual((event.type, event.status), ("FLEX", "ORDERED"))
        self.assertEqual(len(self.snapshot.keys), 3)

    def test_rejected_groups_become_warnings(self):
        plan = plan_flex_generation(self.snapshot, ["a1", "d1"], counts={"A-LGH": 1}, max_flex=3)
        self.assertEqual(plan.summary["rejectedGroups"], ["D-HN"])
        self.assertEqual(len(plan.warnings), 1)

    def test_nothing_generatable_is_rejected(self):
        with self.assertRaises(RuleValidationError) as ctx:
            plan_flex_generation(self.snapshot, ["d1"], max_flex=3)
        self.assertIn("maximum", str(ctx.exception))


if __name__ == "__main__":
    unittest.main()
