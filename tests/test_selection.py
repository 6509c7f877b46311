from dataclasses import dataclass

from services.crypto_core.selection import select_for_amount


@dataclass
class N:
    amount: int
    leaf_index: int


def _leaves(picked):
    notes, total = picked
    return sorted(n.leaf_index for n in notes), total


def test_single_note_covering_target_wins():
    notes = [N(70, 0), N(80, 1), N(200, 2)]
    assert _leaves(select_for_amount(notes, 150, 4)) == ([2], 200)


def test_fewest_notes_then_smallest_excess():
    notes = [N(70, 0), N(80, 1), N(30, 2)]
    assert _leaves(select_for_amount(notes, 100, 4)) == ([0, 2], 100)


def test_exact_match_over_larger_pair():
    notes = [N(60, 0), N(50, 1), N(40, 2)]
    assert _leaves(select_for_amount(notes, 100, 4)) == ([0, 2], 100)


def test_ties_break_on_lowest_leaves():
    notes = [N(50, 3), N(50, 1), N(50, 2)]
    assert _leaves(select_for_amount(notes, 100, 4)) == ([1, 2], 100)


def test_max_inputs_bounds_selection():
    notes = [N(10, i) for i in range(5)]
    assert select_for_amount(notes, 50, 4) is None
    assert _leaves(select_for_amount(notes, 40, 4)) == ([0, 1, 2, 3], 40)


def test_no_partial_fill():
    assert select_for_amount([N(10, 0)], 11, 4) is None
    assert select_for_amount([], 1, 4) is None
    assert select_for_amount([N(10, 0)], 0, 4) is None


def test_large_wallet_combines_only_its_largest_notes():
    notes = [N(i + 1, i) for i in range(200)]
    # the 24 largest notes already hold an exact match
    assert _leaves(select_for_amount(notes, 790, 4)) == ([192, 197, 198, 199], 790)
    assert _leaves(select_for_amount(notes, 150, 4)) == ([149], 150)
    assert select_for_amount(notes, 795, 4) is None
