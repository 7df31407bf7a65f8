#!/usr/bin/env python3
"""
Unit tests for the membership model and diff helpers.
"""

import os
import sys
import unittest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from team_sync.membership import (
    Operation,
    OperationKind,
    Role,
    apply_admin_override,
    compute_operations,
    filter_roles,
    merge_listings,
)

MEMBER = Role.MEMBER
MAINTAINER = Role.MAINTAINER


class TestRole(unittest.TestCase):
    """Test cases for Role parsing and ordering."""

    def test_parse_valid_values(self):
        self.assertIs(Role.parse('member'), MEMBER)
        self.assertIs(Role.parse('maintainer'), MAINTAINER)
        self.assertIs(Role.parse(MAINTAINER), MAINTAINER)

    def test_parse_rejects_unknown_values(self):
        for value in ('admin', 'Maintainer', '', None, 1):
            with self.subTest(value=value):
                with self.assertRaises(ValueError):
                    Role.parse(value)

    def test_maintainer_dominates_member(self):
        self.assertGreater(MAINTAINER.rank, MEMBER.rank)

    def test_str_is_value(self):
        self.assertEqual(str(MAINTAINER), 'maintainer')


class TestMergeListings(unittest.TestCase):
    """Test cases for merging per-role listings."""

    def test_disjoint_listings(self):
        merged = merge_listings({'alice'}, {'bob'})
        self.assertEqual(merged, {'alice': MEMBER, 'bob': MAINTAINER})

    def test_identity_in_both_listings_is_maintainer(self):
        merged = merge_listings(['carol', 'alice'], ['carol'])
        self.assertEqual(merged['carol'], MAINTAINER)
        self.assertEqual(merged['alice'], MEMBER)

    def test_precedence_does_not_depend_on_order(self):
        forward = merge_listings(['carol'], ['carol'])
        backward = merge_listings(reversed(['carol']), reversed(['carol']))
        self.assertEqual(forward, backward)
        self.assertEqual(forward, {'carol': MAINTAINER})

    def test_empty_listings(self):
        self.assertEqual(merge_listings([], []), {})


class TestAdminOverride(unittest.TestCase):
    """Test cases for the org admin maintainer override."""

    def test_admin_member_is_upgraded(self):
        effective = apply_admin_override({'dave': MEMBER, 'erin': MEMBER}, frozenset({'dave'}))
        self.assertEqual(effective, {'dave': MAINTAINER, 'erin': MEMBER})

    def test_admin_maintainer_unchanged(self):
        effective = apply_admin_override({'dave': MAINTAINER}, frozenset({'dave'}))
        self.assertEqual(effective, {'dave': MAINTAINER})

    def test_input_not_modified(self):
        target = {'dave': MEMBER}
        apply_admin_override(target, frozenset({'dave'}))
        self.assertEqual(target, {'dave': MEMBER})


class TestComputeOperations(unittest.TestCase):
    """Test cases for the operation diff."""

    def test_update_add_and_remove(self):
        existing = {'alice': MEMBER, 'bob': MAINTAINER}
        target = {'alice': MAINTAINER, 'carol': MEMBER}

        operations = compute_operations('acme', 'go-readability', existing, target)

        self.assertEqual(operations, [
            Operation(OperationKind.UPDATE, 'acme', 'go-readability', 'alice', MAINTAINER, MEMBER),
            Operation(OperationKind.ADD, 'acme', 'go-readability', 'carol', MEMBER),
            Operation(OperationKind.REMOVE, 'acme', 'go-readability', 'bob', previous_role=MAINTAINER),
        ])

    def test_admin_added_as_maintainer(self):
        operations = compute_operations('acme', 'team', {}, {'dave': MEMBER}, frozenset({'dave'}))
        self.assertEqual(operations, [
            Operation(OperationKind.ADD, 'acme', 'team', 'dave', MAINTAINER),
        ])

    def test_admin_already_maintainer_is_converged(self):
        operations = compute_operations('acme', 'team', {'dave': MAINTAINER}, {'dave': MEMBER},
                                        frozenset({'dave'}))
        self.assertEqual(operations, [])

    def test_converged_state_has_no_operations(self):
        state = {'alice': MEMBER, 'bob': MAINTAINER}
        self.assertEqual(compute_operations('acme', 'team', state, dict(state)), [])

    def test_removal_uses_configured_target_keys(self):
        operations = compute_operations('acme', 'team', {'x': MEMBER, 'y': MEMBER}, {'x': MEMBER})
        removed = [op.identity for op in operations if op.kind == OperationKind.REMOVE]
        self.assertEqual(removed, ['y'])

    def test_empty_target_removes_everyone(self):
        operations = compute_operations('acme', 'team', {'a': MEMBER, 'b': MAINTAINER}, {})
        self.assertEqual([op.kind for op in operations], [OperationKind.REMOVE, OperationKind.REMOVE])

    def test_describe(self):
        op = Operation(OperationKind.UPDATE, 'acme', 'team', 'alice', MAINTAINER, MEMBER)
        self.assertEqual(op.describe(), 'update alice role in acme/team from member to maintainer')
        self.assertTrue(op.is_upsert)
        self.assertFalse(Operation(OperationKind.REMOVE, 'acme', 'team', 'bob').is_upsert)


class TestFilterRoles(unittest.TestCase):

    def test_filter_maintainers(self):
        target = {'alice': MEMBER, 'bob': MAINTAINER}
        self.assertEqual(filter_roles(target, [MAINTAINER]), {'bob': MAINTAINER})

    def test_no_filter_copies(self):
        target = {'alice': MEMBER}
        filtered = filter_roles(target, None)
        self.assertEqual(filtered, target)
        self.assertIsNot(filtered, target)


if __name__ == '__main__':
    unittest.main()
