"""
breeding_engine.py
==================
Creature Breeding Resolution Engine

Resolves breeding outcomes over a fixed catalog of creatures:
  • Forward   : two parents → one child (same-species, override rule, or
                rank-average formula with nearest-rank lookup)
  • Reverse   : one child → every parent pair that produces it
  • Partial   : one known parent + child → every partner, in one step or
                through an intermediate child over two steps

Single-file design; catalog and rule data are supplied by the host.
Everything editable by the team lives in ZONE A below.

──────────────────────────────────────────────────────────────────────────────
FILE STRUCTURE
──────────────────────────────────────────────────────────────────────────────
  ZONE A  — CONFIGURATION  ← team edits here
              A1  Record Field Aliases
              A2  Catalog Number Sentinels
              A3  Sex Tokens
              A4  Search Settings

  ZONE B  — ENGINE         ← do not edit
              Catalog            (sorted entities + nearest-rank index)
              OverrideRuleIndex  (pair → child overrides)
              Resolver           (single-step outcome)
              SearchEngine       (reverse / partial / two-step search)
              BreedingEngine     (host-facing facade)

  ZONE C  — UTILITIES
              combination_entities()
              filter_combinations()
              search_entities()
              to_dataframe()

──────────────────────────────────────────────────────────────────────────────
OUTCOME KINDS  (ResolutionOutcome.kind)
──────────────────────────────────────────────────────────────────────────────
  same_species    parent1.name == parent2.name; result is that entity
  conditional     sex-dependent override rules exist for the pair; the
                  possible children are in .children (narrowed when both
                  parent sexes are supplied)
  unconditional   an override rule exists for the pair; result is its child
  computed        result = nearest non-special entity to
                  floor((rank1 + rank2 + 1) / 2)

Usage
-----
    from breeding_engine import BreedingEngine

    eng = BreedingEngine.from_records(PAL_RECORDS, RULE_RECORDS)
    outcome = eng.resolve("Lamball", "Cattiva")
    print(outcome.kind, outcome.result.name)

    for combo in eng.reverse("Anubis"):
        print(combo.parent1.name, "+", combo.parent2.name)

    chains = eng.partial_reverse("Lamball", "Anubis", steps=2)
"""

from __future__ import annotations
import logging
import math
import re
from bisect import bisect_left
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, NamedTuple, Optional, Sequence, Set, Tuple

logger = logging.getLogger(__name__)

# ═══════════════════════════════════════════════════════════════════════════════
#  ZONE A — CONFIGURATION
#  ─────────────────────────────────────────────────────────────────────────────
#  This is the ONLY section the team should edit.
#  Do NOT modify anything in ZONE B or ZONE C.
# ═══════════════════════════════════════════════════════════════════════════════

# ─────────────────────────────────────────────────────────────────────────────
# A1 — RECORD FIELD ALIASES
# ─────────────────────────────────────────────────────────────────────────────
# Host data arrives as plain dicts.  Each engine field lists the record keys
# it may be read from, tried in order.  The first key present wins.
#
# The camel-case keys match the static data tables shipped with the web
# calculator (PAL_DATA / SPECIAL_BREEDING_RULES).
# ─────────────────────────────────────────────────────────────────────────────
ENTITY_FIELD_ALIASES: Dict[str, Tuple[str, ...]] = {
    "name":           ("name",),
    "display_name":   ("display_name", "displayName", "chinese_name"),
    "catalog_number": ("catalog_number", "catalogNumber", "index"),
    "rank":           ("rank", "CombiRank", "combi_rank"),
    "priority":       ("priority", "Priority"),
    "image_ref":      ("image_ref", "imageRef", "image_name"),
}

RULE_FIELD_ALIASES: Dict[str, Tuple[str, ...]] = {
    "parent1":      ("parent1",),
    "parent2":      ("parent2",),
    "child":        ("child",),
    "conditional":  ("conditional", "genderSpecific", "gender_specific"),
    "parent1_sex":  ("parent1_sex", "parent1Gender", "parent1_gender"),
    "parent2_sex":  ("parent2_sex", "parent2Gender", "parent2_gender"),
}

REQUIRED_ENTITY_FIELDS = ("name", "rank")
REQUIRED_RULE_FIELDS   = ("parent1", "parent2", "child")

# ─────────────────────────────────────────────────────────────────────────────
# A2 — CATALOG NUMBER SENTINELS
# ─────────────────────────────────────────────────────────────────────────────
# Catalog numbers are display labels such as "#12" or "#12B".  The sort value
# is the leading integer.  Labels with no leading integer, or with a value
# <= 0 ("#0", "#-1" mark unindexed creatures), sort as UNINDEXED_SORT_VALUE.
# ─────────────────────────────────────────────────────────────────────────────
UNINDEXED_SORT_VALUE = 999
UNINDEXED_LABEL      = "#-1"

# Search listings order labels by number, then non-numeric labels, then "#0",
# then "#-1".
DISPLAY_ORDER_NON_NUMERIC = 999997
DISPLAY_ORDER_ZERO        = 999998
DISPLAY_ORDER_UNINDEXED   = 999999

# ─────────────────────────────────────────────────────────────────────────────
# A3 — SEX TOKENS
# ─────────────────────────────────────────────────────────────────────────────
SEX_MALE   = "male"
SEX_FEMALE = "female"
SEX_TOKENS = (SEX_MALE, SEX_FEMALE)

# ─────────────────────────────────────────────────────────────────────────────
# A4 — SEARCH SETTINGS
# ─────────────────────────────────────────────────────────────────────────────
SUPPORTED_GENERATIONS  = (1, 2)  # partial reverse search depth
WARM_NEAREST_CACHE     = True    # precompute nearest_by_rank for every pair's computed rank


# ═══════════════════════════════════════════════════════════════════════════════
#  ZONE B — ENGINE
#  ─────────────────────────────────────────────────────────────────────────────
#  Do not edit unless extending the engine architecture itself.
# ═══════════════════════════════════════════════════════════════════════════════

_CATALOG_NUMBER_RE = re.compile(r"^\s*#?\s*(-?\d+)")

KIND_SAME_SPECIES  = "same_species"
KIND_UNCONDITIONAL = "unconditional"
KIND_CONDITIONAL   = "conditional"
KIND_COMPUTED      = "computed"


class BreedingEngineError(Exception):
    """Base class for engine load errors."""


class DuplicateEntityName(BreedingEngineError, ValueError):
    """Two catalog entities share a name."""


class DataIntegrityError(BreedingEngineError, ValueError):
    """Static data is malformed (missing field, rule child absent from catalog)."""


def catalog_sort_value(catalog_number: Any) -> int:
    """Sort value of a catalog label; unindexed labels sort last."""
    if isinstance(catalog_number, int) and not isinstance(catalog_number, bool):
        value = catalog_number
    else:
        m = _CATALOG_NUMBER_RE.match(str(catalog_number or ""))
        if not m:
            return UNINDEXED_SORT_VALUE
        value = int(m.group(1))
    if value <= 0:
        return UNINDEXED_SORT_VALUE
    return value


def catalog_display_order(catalog_number: Any) -> int:
    """Listing order of a catalog label: "#-1" after "#0" after non-numeric labels."""
    m = _CATALOG_NUMBER_RE.match(str(catalog_number if catalog_number is not None else ""))
    if not m:
        return DISPLAY_ORDER_NON_NUMERIC
    value = int(m.group(1))
    if value == 0:
        return DISPLAY_ORDER_ZERO
    if value < 0:
        return DISPLAY_ORDER_UNINDEXED
    return value


def normalise_sex(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    token = str(value).strip().lower()
    if not token:
        return None
    if token not in SEX_TOKENS:
        raise ValueError(f"Unknown sex token {value!r}; expected one of {SEX_TOKENS}.")
    return token


def computed_rank(rank1: int, rank2: int) -> int:
    return (rank1 + rank2 + 1) // 2


@dataclass(frozen=True)
class Entity:
    name:           str
    display_name:   str
    catalog_number: str
    rank:           int
    priority:       int = 0
    image_ref:      str = ""

    @property
    def catalog_sort_value(self) -> int:
        return catalog_sort_value(self.catalog_number)


class PairKey(NamedTuple):
    """Unordered pair of entity names, stored lexicographically."""
    first:  str
    second: str

    @classmethod
    def of(cls, name_a: str, name_b: str) -> "PairKey":
        if name_b < name_a:
            name_a, name_b = name_b, name_a
        return cls(name_a, name_b)


@dataclass(frozen=True)
class OverrideRule:
    parent1:     str
    parent2:     str
    child:       str
    conditional: bool = False
    parent1_sex: Optional[str] = None
    parent2_sex: Optional[str] = None

    @property
    def key(self) -> PairKey:
        return PairKey.of(self.parent1, self.parent2)

    def other_parent(self, name: str) -> Optional[str]:
        """Name of the partner of `name` in this rule, or None if `name` is not a side."""
        if self.parent1 == name:
            return self.parent2
        if self.parent2 == name:
            return self.parent1
        return None

    def sex_of(self, name: str) -> Optional[str]:
        if self.parent1 == name:
            return self.parent1_sex
        if self.parent2 == name:
            return self.parent2_sex
        return None

    def matches(
        self,
        parent1_name: str,
        parent1_sex: Optional[str],
        parent2_name: str,
        parent2_sex: Optional[str],
    ) -> bool:
        """
        True if the actual parents satisfy this rule's sex assignment.

        The rule is unordered: (parent1, parent2) is tried as given and
        swapped.  A side with no required sex accepts any sex.
        """
        def _side_ok(required: Optional[str], actual: Optional[str]) -> bool:
            return required is None or actual == required

        if (self.parent1, self.parent2) == (parent1_name, parent2_name):
            if _side_ok(self.parent1_sex, parent1_sex) and _side_ok(self.parent2_sex, parent2_sex):
                return True
        if (self.parent1, self.parent2) == (parent2_name, parent1_name):
            if _side_ok(self.parent1_sex, parent2_sex) and _side_ok(self.parent2_sex, parent1_sex):
                return True
        return False


def _pick(record: Mapping[str, Any], aliases: Sequence[str]) -> Any:
    for key in aliases:
        if key in record:
            return record[key]
    return None


def entity_from_record(record: Mapping[str, Any]) -> Entity:
    """Build an Entity from a host dict using ENTITY_FIELD_ALIASES."""
    values = {f: _pick(record, keys) for f, keys in ENTITY_FIELD_ALIASES.items()}
    missing = [f for f in REQUIRED_ENTITY_FIELDS if values[f] is None]
    if missing:
        raise DataIntegrityError(f"Entity record {dict(record)!r} is missing {missing}.")
    try:
        rank = int(values["rank"])
        priority = int(values["priority"] or 0)
    except (TypeError, ValueError) as exc:
        raise DataIntegrityError(
            f"Entity {values['name']!r} has a non-integer rank or priority.") from exc
    name = str(values["name"])
    return Entity(
        name=name,
        display_name=str(values["display_name"] or name),
        catalog_number=str(values["catalog_number"] or UNINDEXED_LABEL),
        rank=rank,
        priority=priority,
        image_ref=str(values["image_ref"] or ""),
    )


_TRUE_FLAGS  = ("true", "1", "yes", "y")
_FALSE_FLAGS = ("false", "0", "no", "n", "")


def _parse_flag(value: Any, field_name: str) -> bool:
    if value is None:
        return False
    if isinstance(value, (bool, int)):
        return bool(value)
    token = str(value).strip().lower()
    if token in _TRUE_FLAGS:
        return True
    if token in _FALSE_FLAGS:
        return False
    raise DataIntegrityError(f"Field {field_name!r} has a non-boolean value {value!r}.")


def rule_from_record(record: Mapping[str, Any]) -> OverrideRule:
    """Build an OverrideRule from a host dict using RULE_FIELD_ALIASES."""
    values = {f: _pick(record, keys) for f, keys in RULE_FIELD_ALIASES.items()}
    missing = [f for f in REQUIRED_RULE_FIELDS if not values[f]]
    if missing:
        raise DataIntegrityError(f"Rule record {dict(record)!r} is missing {missing}.")
    try:
        sex1 = normalise_sex(values["parent1_sex"])
        sex2 = normalise_sex(values["parent2_sex"])
    except ValueError as exc:
        raise DataIntegrityError(f"Rule record {dict(record)!r}: {exc}") from exc
    return OverrideRule(
        parent1=str(values["parent1"]),
        parent2=str(values["parent2"]),
        child=str(values["child"]),
        conditional=_parse_flag(values["conditional"], "conditional"),
        parent1_sex=sex1,
        parent2_sex=sex2,
    )


# ─────────────────────────────────────────────────────────────────────────────
# Result records
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ResolutionOutcome:
    kind:     str
    result:   Optional[Entity]
    rules:    Tuple[OverrideRule, ...] = ()
    children: Tuple[Entity, ...] = ()

    def produces(self, name: str) -> bool:
        return any(c.name == name for c in self.children)


@dataclass(frozen=True)
class BreedingStep:
    parent1: Entity
    parent2: Entity
    child:   Entity


@dataclass(frozen=True)
class BreedingPath:
    step1: BreedingStep   # known ⊕ X → intermediate
    step2: BreedingStep   # intermediate ⊕ Y → target


@dataclass(frozen=True)
class BreedingCombination:
    parent1:     Entity
    parent2:     Entity
    child:       Entity
    parent1_sex: Optional[str] = None
    parent2_sex: Optional[str] = None
    path:        Optional[BreedingPath] = None

    @property
    def is_multi_generation(self) -> bool:
        return self.path is not None

    @property
    def pair_key(self) -> PairKey:
        return PairKey.of(self.parent1.name, self.parent2.name)

    @property
    def path_key(self) -> Optional[Tuple[str, str, str, str]]:
        """(known, X, intermediate, Y) for two-step results."""
        if self.path is None:
            return None
        s1, s2 = self.path.step1, self.path.step2
        return (s1.parent1.name, s1.parent2.name, s1.child.name, s2.parent2.name)

    def entity_names(self) -> List[str]:
        """Every name appearing in this combination, in display order."""
        if self.path is None:
            return [self.parent1.name, self.parent2.name, self.child.name]
        s1, s2 = self.path.step1, self.path.step2
        return [s1.parent1.name, s1.parent2.name, s1.child.name,
                s2.parent1.name, s2.parent2.name, s2.child.name]


# ─────────────────────────────────────────────────────────────────────────────
# Catalog
# ─────────────────────────────────────────────────────────────────────────────

class Catalog:
    """
    Entities sorted by (rank, catalog sort value) with a nearest-rank index.

    Special entities (children of override rules) stay in the sequence but
    are never returned by nearest_by_rank.
    """

    def __init__(self, entities: Iterable[Entity] = (), special_names: Iterable[str] = ()) -> None:
        self._load(entities, special_names)

    @classmethod
    def load(cls, entities: Iterable[Entity], special_names: Iterable[str] = ()) -> "Catalog":
        return cls(entities, special_names)

    def _load(self, entities: Iterable[Entity], special_names: Iterable[str]) -> None:
        by_name: Dict[str, Entity] = {}
        for e in entities:
            if e.name in by_name:
                raise DuplicateEntityName(f"Duplicate entity name {e.name!r} in catalog.")
            by_name[e.name] = e
        self._by_name = by_name
        # sorted() is stable: ties on both keys keep input order
        self._entities: Tuple[Entity, ...] = tuple(
            sorted(by_name.values(), key=lambda e: (e.rank, e.catalog_sort_value)))
        self._special_names = frozenset(special_names)
        self._build_nearest_index()

    def _build_nearest_index(self) -> None:
        ents = self._entities
        n = len(ents)
        self._ranks: List[int] = [e.rank for e in ents]
        self._special: List[bool] = [e.name in self._special_names for e in ents]

        # Nearest non-special index strictly below / above each position
        self._below: List[int] = [-1] * n
        self._above: List[int] = [-1] * n
        last = -1
        for i in range(n):
            self._below[i] = last
            if not self._special[i]:
                last = i
        nxt = -1
        for i in range(n - 1, -1, -1):
            self._above[i] = nxt
            if not self._special[i]:
                nxt = i

        # Best non-special entity within each run of equal rank
        # (highest priority; first in sort order on equal priority)
        self._group_best: List[int] = [-1] * n
        start = 0
        while start < n:
            end = start
            while end < n and self._ranks[end] == self._ranks[start]:
                end += 1
            best = -1
            for i in range(start, end):
                if self._special[i]:
                    continue
                if best < 0 or ents[i].priority > ents[best].priority:
                    best = i
            for i in range(start, end):
                if not self._special[i]:
                    self._group_best[i] = best
            start = end

        self._nearest_cache: Dict[int, Entity] = {}
        if WARM_NEAREST_CACHE and n:
            distinct = sorted(set(self._ranks))
            reachable = {computed_rank(a, b)
                         for i, a in enumerate(distinct) for b in distinct[i:]}
            for r in reachable:
                found = self._find_nearest(r)
                if found is not None:
                    self._nearest_cache[r] = found

    # ── Lookups ────────────────────────────────────────────────────────────

    def __len__(self) -> int:
        return len(self._entities)

    def __iter__(self):
        return iter(self._entities)

    def __contains__(self, name: object) -> bool:
        return name in self._by_name

    def by_name(self, name: str) -> Optional[Entity]:
        return self._by_name.get(name)

    def all(self) -> Tuple[Entity, ...]:
        return self._entities

    def is_special(self, name: str) -> bool:
        return name in self._special_names

    def nearest_by_rank(self, target_rank: float) -> Optional[Entity]:
        """
        Non-special entity whose rank is closest to target_rank.

        Equidistant candidates: higher priority wins, then lower rank.
        Returns None when the catalog has no non-special entity.
        """
        key = math.floor(target_rank)
        hit = self._nearest_cache.get(key)
        if hit is not None:
            return hit
        found = self._find_nearest(key)
        if found is not None:
            # insert-if-absent; concurrent fills compute the same value
            self._nearest_cache.setdefault(key, found)
        return found

    def _find_nearest(self, target_rank: int) -> Optional[Entity]:
        n = len(self._ranks)
        if n == 0:
            return None
        lo = bisect_left(self._ranks, target_rank)

        candidates: List[int] = []
        if lo > 0:
            li = lo - 1
            if self._special[li]:
                li = self._below[li]
            if li >= 0:
                candidates.append(self._group_best[li])
        if lo < n:
            ri = lo
            if self._special[ri]:
                ri = self._above[ri]
            if ri >= 0:
                candidates.append(self._group_best[ri])
        if not candidates:
            return None

        best = candidates[0]
        for idx in candidates[1:]:
            if self._closer(idx, best, target_rank):
                best = idx
        return self._entities[best]

    def _closer(self, idx: int, best: int, target_rank: int) -> bool:
        d_idx = abs(self._ranks[idx] - target_rank)
        d_best = abs(self._ranks[best] - target_rank)
        if d_idx != d_best:
            return d_idx < d_best
        p_idx = self._entities[idx].priority
        p_best = self._entities[best].priority
        if p_idx != p_best:
            return p_idx > p_best
        return self._ranks[idx] < self._ranks[best]


# ─────────────────────────────────────────────────────────────────────────────
# Override rules
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class RuleLookup:
    """Override behaviour for one unordered pair (kind is unconditional or conditional)."""
    kind:  str
    child: Optional[str] = None
    rules: Tuple[OverrideRule, ...] = ()


class OverrideRuleIndex:
    """Override rules indexed by unordered parent pair."""

    def __init__(self, rules: Iterable[OverrideRule] = ()) -> None:
        self._rules: Tuple[OverrideRule, ...] = tuple(rules)
        self._unconditional: Dict[PairKey, str] = {}
        self._conditional: Dict[PairKey, List[OverrideRule]] = {}
        self._special: Set[str] = set()
        for rule in self._rules:
            if rule.conditional:
                self._conditional.setdefault(rule.key, []).append(rule)
            else:
                self._unconditional[rule.key] = rule.child
            self._special.add(rule.child)

        # Unconditional rules on a conditional pair never fire; their child
        # stays special but the pair is not listed as producing it.
        self._by_child: Dict[str, List[OverrideRule]] = {}
        for rule in self._rules:
            if not rule.conditional and rule.key in self._conditional:
                logger.debug("Unconditional rule %s + %s → %s is shadowed by conditional rules",
                             rule.parent1, rule.parent2, rule.child)
                continue
            self._by_child.setdefault(rule.child, []).append(rule)

    @classmethod
    def build(cls, rules: Iterable[OverrideRule]) -> "OverrideRuleIndex":
        return cls(rules)

    def __len__(self) -> int:
        return len(self._rules)

    @property
    def rules(self) -> Tuple[OverrideRule, ...]:
        return self._rules

    @property
    def special_names(self) -> Set[str]:
        return set(self._special)

    def lookup(self, name_a: str, name_b: str) -> Optional[RuleLookup]:
        """None when the pair has no override; conditional rules shadow unconditional."""
        key = PairKey.of(name_a, name_b)
        conditional = self._conditional.get(key)
        if conditional:
            return RuleLookup(KIND_CONDITIONAL, rules=tuple(conditional))
        child = self._unconditional.get(key)
        if child is not None:
            return RuleLookup(KIND_UNCONDITIONAL, child=child)
        return None

    def children_of(self, target_name: str) -> List[OverrideRule]:
        """Rules that can actually produce target_name (shadowed rules excluded)."""
        return list(self._by_child.get(target_name, ()))

    def is_special_child(self, name: str) -> bool:
        return name in self._special


# ─────────────────────────────────────────────────────────────────────────────
# Resolver
# ─────────────────────────────────────────────────────────────────────────────

class Resolver:
    """Single-step outcome: same-species > override rule > computed rank."""

    def __init__(self, catalog: Catalog, rule_index: OverrideRuleIndex) -> None:
        self._catalog = catalog
        self._rules = rule_index

    def _child_entity(self, name: str) -> Entity:
        child = self._catalog.by_name(name)
        if child is None:
            raise DataIntegrityError(f"Override child {name!r} is not in the catalog.")
        return child

    def resolve(
        self,
        parent1: Entity,
        parent2: Entity,
        parent1_sex: Optional[str] = None,
        parent2_sex: Optional[str] = None,
    ) -> ResolutionOutcome:
        if parent1.name == parent2.name:
            return ResolutionOutcome(KIND_SAME_SPECIES, parent1, children=(parent1,))

        hit = self._rules.lookup(parent1.name, parent2.name)
        if hit is not None and hit.kind == KIND_CONDITIONAL:
            rules = hit.rules
            if parent1_sex is not None and parent2_sex is not None:
                rules = tuple(r for r in rules
                              if r.matches(parent1.name, parent1_sex, parent2.name, parent2_sex))
            children: List[Entity] = []
            for r in rules:
                c = self._child_entity(r.child)
                if c not in children:
                    children.append(c)
            return ResolutionOutcome(KIND_CONDITIONAL, None, rules=rules, children=tuple(children))
        if hit is not None:
            child = self._child_entity(hit.child)
            return ResolutionOutcome(KIND_UNCONDITIONAL, child, children=(child,))

        result = self._catalog.nearest_by_rank(computed_rank(parent1.rank, parent2.rank))
        return ResolutionOutcome(KIND_COMPUTED, result,
                                 children=(result,) if result is not None else ())


# ─────────────────────────────────────────────────────────────────────────────
# Search
# ─────────────────────────────────────────────────────────────────────────────

class SearchEngine:
    """Exhaustive reverse searches over the catalog; results are never capped."""

    def __init__(self, catalog: Catalog, rule_index: OverrideRuleIndex, resolver: Resolver) -> None:
        self._catalog = catalog
        self._rules = rule_index
        self._resolver = resolver

    def _formula_can_reach(self, target: Entity) -> bool:
        # A rank the formula lands on only yields target if target is the
        # nearest match for its own rank.
        if self._rules.is_special_child(target.name):
            return False
        nearest = self._catalog.nearest_by_rank(target.rank)
        return nearest is not None and nearest.name == target.name

    def _computes_target(self, parent1: Entity, parent2: Entity, target: Entity) -> bool:
        if self._rules.lookup(parent1.name, parent2.name) is not None:
            return False
        result = self._catalog.nearest_by_rank(computed_rank(parent1.rank, parent2.rank))
        return result is not None and result.name == target.name

    # ── Full reverse ───────────────────────────────────────────────────────

    def reverse(self, target: Entity) -> List[BreedingCombination]:
        combos: List[BreedingCombination] = [BreedingCombination(target, target, target)]
        seen: Set[PairKey] = {PairKey.of(target.name, target.name)}

        for rule in self._rules.children_of(target.name):
            p1 = self._catalog.by_name(rule.parent1)
            p2 = self._catalog.by_name(rule.parent2)
            if p1 is None or p2 is None:
                continue
            if rule.key in seen:
                continue
            seen.add(rule.key)
            combos.append(BreedingCombination(p1, p2, target,
                                              parent1_sex=rule.parent1_sex,
                                              parent2_sex=rule.parent2_sex))

        if not self._formula_can_reach(target):
            return combos

        ents = self._catalog.all()
        for i, parent1 in enumerate(ents):
            for parent2 in ents[i:]:
                if parent1.name == parent2.name:
                    continue
                key = PairKey.of(parent1.name, parent2.name)
                if key in seen:
                    continue
                if self._computes_target(parent1, parent2, target):
                    seen.add(key)
                    combos.append(BreedingCombination(parent1, parent2, target))

        logger.debug("reverse(%s): %d combinations", target.name, len(combos))
        return combos

    # ── Partial reverse, one generation ────────────────────────────────────

    def partial_reverse(
        self,
        known: Entity,
        target: Entity,
        known_is_parent1: bool = True,
    ) -> List[BreedingCombination]:
        combos: List[BreedingCombination] = []
        seen: Set[PairKey] = set()

        def _emit(other: Entity, known_sex: Optional[str] = None,
                  other_sex: Optional[str] = None) -> None:
            seen.add(PairKey.of(known.name, other.name))
            if known_is_parent1:
                combos.append(BreedingCombination(known, other, target, known_sex, other_sex))
            else:
                combos.append(BreedingCombination(other, known, target, other_sex, known_sex))

        if known.name == target.name:
            _emit(target)

        for rule in self._rules.children_of(target.name):
            other_name = rule.other_parent(known.name)
            if other_name is None:
                continue
            other = self._catalog.by_name(other_name)
            if other is None or PairKey.of(known.name, other.name) in seen:
                continue
            _emit(other, rule.sex_of(known.name),
                  rule.parent2_sex if rule.parent1 == known.name else rule.parent1_sex)

        if not self._formula_can_reach(target):
            return combos

        for candidate in self._catalog.all():
            if candidate.name == known.name:
                continue
            if PairKey.of(known.name, candidate.name) in seen:
                continue
            if self._computes_target(known, candidate, target):
                _emit(candidate)

        logger.debug("partial_reverse(%s -> %s): %d combinations",
                     known.name, target.name, len(combos))
        return combos

    # ── Partial reverse, two generations ───────────────────────────────────

    def partial_reverse_two_step(
        self,
        known: Entity,
        target: Entity,
        known_is_parent1: bool = True,
    ) -> List[BreedingCombination]:
        """
        Chains known ⊕ X → intermediate, intermediate ⊕ Y → target.

        Equivalent to looping intermediate × X × Y over the catalog, but
        resolves known ⊕ X once per X and intermediate ⊕ Y once per
        reachable intermediate.  Conditional outcomes count every possible
        child.  X and Y range over the whole catalog, including special
        entities and the known parent itself.
        """
        ents = self._catalog.all()

        firsts_by_intermediate: Dict[str, List[Entity]] = {}
        for first in ents:
            for intermediate in self._resolver.resolve(known, first).children:
                firsts_by_intermediate.setdefault(intermediate.name, []).append(first)

        combos: List[BreedingCombination] = []
        seen: Set[Tuple[str, str, str, str]] = set()
        for intermediate in ents:
            firsts = firsts_by_intermediate.get(intermediate.name)
            if not firsts:
                continue
            seconds = [y for y in ents
                       if self._resolver.resolve(intermediate, y).produces(target.name)]
            for first in firsts:
                for second in seconds:
                    path_key = (known.name, first.name, intermediate.name, second.name)
                    if path_key in seen:
                        continue
                    seen.add(path_key)
                    path = BreedingPath(
                        step1=BreedingStep(known, first, intermediate),
                        step2=BreedingStep(intermediate, second, target),
                    )
                    if known_is_parent1:
                        combos.append(BreedingCombination(known, first, target, path=path))
                    else:
                        combos.append(BreedingCombination(first, known, target, path=path))

        logger.debug("partial_reverse_two_step(%s -> %s): %d chains",
                     known.name, target.name, len(combos))
        return combos


# ─────────────────────────────────────────────────────────────────────────────
# Facade
# ─────────────────────────────────────────────────────────────────────────────

class BreedingEngine:
    """
    Host-facing engine.  Built once from static data; read-only afterwards.

    Usage:
        eng = BreedingEngine(entities, rules)
        eng.resolve("A", "B").kind        # → "unconditional"
        eng.reverse("E")                  # → [BreedingCombination, ...]
        eng.partial_reverse("A", "E", steps=2)
    """

    def __init__(self, entities: Iterable[Entity], rules: Iterable[OverrideRule] = ()) -> None:
        self.warnings: List[str] = []
        self.rule_index = OverrideRuleIndex(rules)
        self.catalog = Catalog(entities, special_names=self.rule_index.special_names)
        self._check_integrity()
        self.resolver = Resolver(self.catalog, self.rule_index)
        self.search = SearchEngine(self.catalog, self.rule_index, self.resolver)
        logger.debug("Loaded %d entities, %d override rules (%d special children)",
                     len(self.catalog), len(self.rule_index),
                     len(self.rule_index.special_names))

    @classmethod
    def from_records(
        cls,
        entity_records: Iterable[Mapping[str, Any]],
        rule_records: Iterable[Mapping[str, Any]] = (),
    ) -> "BreedingEngine":
        return cls([entity_from_record(r) for r in entity_records],
                   [rule_from_record(r) for r in rule_records])

    def _check_integrity(self) -> None:
        for rule in self.rule_index.rules:
            if rule.child not in self.catalog:
                raise DataIntegrityError(
                    f"Override rule {rule.parent1} + {rule.parent2} → {rule.child}: "
                    f"child {rule.child!r} is not in the catalog.")
            for parent in (rule.parent1, rule.parent2):
                if parent not in self.catalog:
                    msg = (f"Override rule {rule.parent1} + {rule.parent2} → {rule.child}: "
                           f"parent {parent!r} is not in the catalog; rule skipped by reverse search.")
                    self.warnings.append(msg)
                    logger.warning(msg)

    # ── Public API ─────────────────────────────────────────────────────────

    def by_name(self, name: str) -> Optional[Entity]:
        return self.catalog.by_name(name)

    def all(self) -> Tuple[Entity, ...]:
        return self.catalog.all()

    def resolve(
        self,
        parent1_name: str,
        parent2_name: str,
        parent1_sex: Optional[str] = None,
        parent2_sex: Optional[str] = None,
    ) -> Optional[ResolutionOutcome]:
        """Outcome for the pair, or None if either name is unknown."""
        p1 = self.catalog.by_name(parent1_name)
        p2 = self.catalog.by_name(parent2_name)
        if p1 is None or p2 is None:
            return None
        return self.resolver.resolve(p1, p2, normalise_sex(parent1_sex), normalise_sex(parent2_sex))

    def reverse(self, target_name: str) -> List[BreedingCombination]:
        target = self.catalog.by_name(target_name)
        if target is None:
            return []
        return self.search.reverse(target)

    def partial_reverse(
        self,
        known_name: str,
        target_name: str,
        known_is_parent1: bool = True,
        steps: int = 1,
    ) -> List[BreedingCombination]:
        known = self.catalog.by_name(known_name)
        target = self.catalog.by_name(target_name)
        if known is None or target is None:
            return []
        if steps == 1:
            return self.search.partial_reverse(known, target, known_is_parent1)
        if steps == 2:
            return self.search.partial_reverse_two_step(known, target, known_is_parent1)
        logger.warning("partial_reverse: unsupported steps=%r (supported: %s)",
                       steps, SUPPORTED_GENERATIONS)
        return []


# ═══════════════════════════════════════════════════════════════════════════════
#  ZONE C — UTILITIES
# ═══════════════════════════════════════════════════════════════════════════════

def combination_entities(combinations: Iterable[BreedingCombination]) -> List[str]:
    """Unique entity names appearing in the results, in first-seen order."""
    seen: Dict[str, None] = {}
    for combo in combinations:
        for name in combo.entity_names():
            seen.setdefault(name, None)
    return list(seen)


def filter_combinations(
    combinations: Iterable[BreedingCombination],
    exclude: Iterable[str] = (),
    select: Iterable[str] = (),
) -> List[BreedingCombination]:
    """
    Drop combinations touching any excluded name; then, if `select` is
    non-empty, keep only combinations touching at least one selected name.
    Two-step results are checked across both steps.
    """
    excluded = set(exclude)
    selected = set(select)
    out: List[BreedingCombination] = []
    for combo in combinations:
        names = combo.entity_names()
        if any(n in excluded for n in names):
            continue
        if selected and not any(n in selected for n in names):
            continue
        out.append(combo)
    return out


def search_entities(entities: Iterable[Entity], term: str) -> List[Entity]:
    """
    Case-insensitive substring search over name, display name and catalog
    number.  Display-name prefix matches first, then name prefix matches,
    then catalog order.  An empty term lists everything in catalog order.
    """
    pool = list(entities)
    needle = (term or "").strip().lower()
    if not needle:
        return sorted(pool, key=lambda e: catalog_display_order(e.catalog_number))

    hits = [e for e in pool
            if needle in e.display_name.lower()
            or needle in e.name.lower()
            or needle in e.catalog_number.lower()]
    return sorted(hits, key=lambda e: (
        not e.display_name.lower().startswith(needle),
        not e.name.lower().startswith(needle),
        catalog_display_order(e.catalog_number),
    ))


def to_dataframe(combinations: List[BreedingCombination]):
    """Convert a list of BreedingCombination objects to a pandas DataFrame."""
    import pandas as pd
    rows = []
    for c in combinations:
        row = {
            "parent1":            c.parent1.name,
            "parent2":            c.parent2.name,
            "child":              c.child.name,
            "parent1_sex":        c.parent1_sex,
            "parent2_sex":        c.parent2_sex,
            "multi_generation":   c.is_multi_generation,
            # Two-step columns
            "intermediate":       c.path.step1.child.name if c.path else None,
            "step1_parent1":      c.path.step1.parent1.name if c.path else None,
            "step1_parent2":      c.path.step1.parent2.name if c.path else None,
            "step2_parent2":      c.path.step2.parent2.name if c.path else None,
        }
        rows.append(row)
    return pd.DataFrame(rows, columns=[
        "parent1", "parent2", "child", "parent1_sex", "parent2_sex",
        "multi_generation", "intermediate", "step1_parent1", "step1_parent2",
        "step2_parent2",
    ])


# ─────────────────────────────────────────────────────────────────────────────
# Quick smoke-test (run: python breeding_engine.py)
# ─────────────────────────────────────────────────────────────────────────────
if __name__ == "__main__":
    DEMO_ENTITIES = [
        {"name": "A", "index": "#1", "CombiRank": 1,  "Priority": 0},
        {"name": "B", "index": "#2", "CombiRank": 3,  "Priority": 0},
        {"name": "C", "index": "#3", "CombiRank": 3,  "Priority": 5},
        {"name": "D", "index": "#4", "CombiRank": 10, "Priority": 0},
        {"name": "E", "index": "#5", "CombiRank": 7,  "Priority": 0},
    ]
    DEMO_RULES = [{"parent1": "A", "parent2": "B", "child": "E"}]

    eng = BreedingEngine.from_records(DEMO_ENTITIES, DEMO_RULES)
    for a, b in [("A", "B"), ("A", "D"), ("B", "C"), ("E", "E")]:
        o = eng.resolve(a, b)
        print(f"{a} + {b:<3} → {o.kind:<14} {o.result.name if o.result else '-'}")
    print("-" * 40)
    for combo in eng.reverse("E"):
        print(f"reverse(E): {combo.parent1.name} + {combo.parent2.name}")
