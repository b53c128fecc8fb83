"""
test_utilities.py
=================
Unit tests for result post-processing:
  - Entity extraction across one- and two-step results
  - Exclude / select filtering (select uses OR logic)
  - Free-text entity search ordering
  - DataFrame export
"""

import importlib.util
import sys
import os
import unittest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "engine"))
from breeding_engine import (
    BreedingEngine,
    Entity,
    OverrideRule,
    combination_entities,
    filter_combinations,
    search_entities,
    to_dataframe,
)

HAS_PANDAS = importlib.util.find_spec("pandas") is not None


def ent(name, rank, number="#-1", display=None):
    return Entity(name=name, display_name=display or name, catalog_number=number, rank=rank)


CHAIN = [
    ent("K", 10, "#1"),
    ent("X", 20, "#2"),
    ent("X2", 22, "#3"),
    ent("I", 30, "#4"),
    ent("T", 40, "#5"),
]
eng = BreedingEngine(CHAIN, [
    OverrideRule("K", "X", "I"),
    OverrideRule("K", "X2", "I"),
    OverrideRule("I", "K", "T"),
])

chains = eng.partial_reverse("K", "T", steps=2)
singles = eng.reverse("I")


# ─────────────────────────────────────────────────────────────────────────────
# Entity extraction
# ─────────────────────────────────────────────────────────────────────────────

class TestCombinationEntities(unittest.TestCase):

    def test_single_step(self):
        self.assertEqual(combination_entities(singles), ["I", "K", "X", "X2"])

    def test_two_step_includes_both_steps(self):
        self.assertEqual(combination_entities(chains), ["K", "I", "T", "X", "X2"])

    def test_empty(self):
        self.assertEqual(combination_entities([]), [])


# ─────────────────────────────────────────────────────────────────────────────
# Filtering
# ─────────────────────────────────────────────────────────────────────────────

class TestFilterCombinations(unittest.TestCase):

    def test_no_filters_keeps_all(self):
        self.assertEqual(filter_combinations(chains), chains)

    def test_exclude_step1_partner(self):
        # X2 only appears as the step-1 partner of one chain
        kept = filter_combinations(chains, exclude={"X2"})
        self.assertEqual(len(kept), len(chains) - 1)

    def test_exclude_intermediate(self):
        kept = filter_combinations(chains, exclude={"I"})
        self.assertEqual(kept, [])

    def test_select_is_or(self):
        kept = filter_combinations(singles, select={"X", "X2"})
        self.assertEqual([c.parent2.name for c in kept], ["X", "X2"])

    def test_exclude_applies_before_select(self):
        kept = filter_combinations(singles, exclude={"X"}, select={"X", "X2"})
        self.assertEqual([c.parent2.name for c in kept], ["X2"])


# ─────────────────────────────────────────────────────────────────────────────
# Entity search
# ─────────────────────────────────────────────────────────────────────────────

class TestSearchEntities(unittest.TestCase):

    POOL = [
        ent("Lamball", 1470, "#1", "棉悠悠"),
        ent("Cattiva", 1460, "#2", "捣蛋猫"),
        ent("Lamball Lux", 1400, "#-1", "雷棉"),
        ent("Ballista", 900, "#40", "Ballista"),
    ]

    def test_empty_term_lists_by_catalog_number(self):
        self.assertEqual([e.name for e in search_entities(self.POOL, "")],
                         ["Lamball", "Cattiva", "Ballista", "Lamball Lux"])

    def test_unindexed_after_zero_after_non_numeric(self):
        pool = [
            ent("Ghost", 10, "#-1"),
            ent("Zero", 10, "#0"),
            ent("Odd", 10, "n/a"),
            ent("Real", 10, "#7"),
        ]
        self.assertEqual([e.name for e in search_entities(pool, "")],
                         ["Real", "Odd", "Zero", "Ghost"])
        # Odd is a prefix hit; the others keep listing order
        self.assertEqual([e.name for e in search_entities(pool, "o")],
                         ["Odd", "Zero", "Ghost"])

    def test_case_insensitive_substring(self):
        hits = [e.name for e in search_entities(self.POOL, "BALL")]
        self.assertEqual(set(hits), {"Lamball", "Lamball Lux", "Ballista"})

    def test_prefix_matches_first(self):
        hits = [e.name for e in search_entities(self.POOL, "ball")]
        self.assertEqual(hits[0], "Ballista")

    def test_display_name_search(self):
        self.assertEqual([e.name for e in search_entities(self.POOL, "猫")], ["Cattiva"])

    def test_catalog_number_search(self):
        self.assertEqual([e.name for e in search_entities(self.POOL, "#40")], ["Ballista"])


# ─────────────────────────────────────────────────────────────────────────────
# DataFrame export
# ─────────────────────────────────────────────────────────────────────────────

@unittest.skipUnless(HAS_PANDAS, "pandas not installed")
class TestToDataFrame(unittest.TestCase):

    def test_rows_and_columns(self):
        df = to_dataframe(chains)
        self.assertEqual(len(df), len(chains))
        self.assertIn("intermediate", df.columns)
        self.assertEqual(list(df["step2_parent2"]), [c.path.step2.parent2.name for c in chains])
        self.assertTrue(df["multi_generation"].all())

    def test_single_step_has_no_path_columns(self):
        df = to_dataframe(singles)
        self.assertTrue(df["intermediate"].isna().all())
        self.assertEqual(list(df["child"]), ["I"] * len(singles))

    def test_empty(self):
        df = to_dataframe([])
        self.assertEqual(len(df), 0)
        self.assertIn("parent1", df.columns)


if __name__ == "__main__":
    unittest.main()
