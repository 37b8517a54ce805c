import unittest

import aiosqlite

from foundry.db.repositories.feature_nodes import SqliteFeatureNodeRepository
from foundry.db.sqlite_migrations import run_migrations
from foundry.errors import ValidationError
from foundry.services.feature_tree import FeatureTreeService
from foundry.services.status_cascade import StatusCascade
from foundry.services.tree_search import TreeSearchService, percent_of


class PercentOfTests(unittest.TestCase):
    def test_rounds_halves_up(self) -> None:
        self.assertEqual(percent_of(1, 8), 13)
        self.assertEqual(percent_of(1, 3), 33)
        self.assertEqual(percent_of(2, 3), 67)
        self.assertEqual(percent_of(0, 0), 0)


class TreeSearchTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.db = await aiosqlite.connect(":memory:")
        self.db.row_factory = aiosqlite.Row
        await run_migrations(self.db)
        self.repo = SqliteFeatureNodeRepository(self.db)
        self.search = TreeSearchService(self.repo)

        tree = FeatureTreeService(self.repo)
        self.checkout = await tree.create_node("project-1", "Checkout")
        self.payment = await tree.create_node("project-1", "Payment", parent_id=self.checkout.id)
        self.card = await tree.create_node(
            "project-1", "Card form", parent_id=self.payment.id, description="Stripe Elements integration"
        )
        self.shipping = await tree.create_node("project-1", "Shipping", parent_id=self.checkout.id)
        self.admin = await tree.create_node("project-1", "Admin")
        await StatusCascade(self.repo).update_status("project-1", self.shipping.id, "blocked")

    async def asyncTearDown(self) -> None:
        await self.db.close()

    async def test_empty_query_returns_every_live_node(self) -> None:
        result = await self.search.search("project-1")

        all_ids = {n.id for n in (self.checkout, self.payment, self.card, self.shipping, self.admin)}
        self.assertEqual(set(result.matchingIds), all_ids)
        self.assertEqual(set(result.displayIds), all_ids)
        self.assertEqual(result.totalMatches, 5)

    async def test_description_match_pulls_in_ancestors(self) -> None:
        result = await self.search.search("project-1", "  STRIPE ")

        self.assertEqual(result.matchingIds, [self.card.id])
        self.assertEqual(set(result.displayIds), {self.card.id, self.payment.id, self.checkout.id})

    async def test_filters_narrow_matches_but_not_counts(self) -> None:
        result = await self.search.search("project-1", statuses="blocked,in_progress", levels=["feature"])

        self.assertEqual(result.matchingIds, [self.shipping.id])
        self.assertEqual(set(result.displayIds), {self.shipping.id, self.checkout.id})
        self.assertEqual(result.statusCounts, {"not_started": 3, "in_progress": 0, "complete": 0, "blocked": 2})
        self.assertEqual(result.levelCounts, {"epic": 2, "feature": 2, "sub_feature": 1, "task": 0})

    async def test_no_matches(self) -> None:
        result = await self.search.search("project-1", "nothing like this")

        self.assertEqual(result.matchingIds, [])
        self.assertEqual(result.displayIds, [])
        self.assertEqual(sum(result.statusCounts.values()), 5)

    async def test_unknown_filter_values_are_rejected(self) -> None:
        with self.assertRaises(ValidationError):
            await self.search.search("project-1", statuses="done")
        with self.assertRaises(ValidationError):
            await self.search.search("project-1", levels="story")

    async def test_deleted_nodes_are_excluded(self) -> None:
        await FeatureTreeService(self.repo).delete_node("project-1", self.admin.id)

        result = await self.search.search("project-1", "admin")

        self.assertEqual(result.totalMatches, 0)
        self.assertEqual(result.levelCounts["epic"], 1)

    async def test_stats(self) -> None:
        stats = await self.search.get_stats("project-1")

        self.assertEqual(stats.totalNodes, 5)
        self.assertEqual(stats.epicCount, 2)
        self.assertEqual(stats.featureCount, 2)
        self.assertEqual(stats.subfeatureCount, 1)
        self.assertEqual(stats.blockedNodeCount, 2)
        self.assertEqual(stats.blockedPercent, 40)
        self.assertEqual(stats.completionPercent, 0)

        empty = await self.search.get_stats("project-2")
        self.assertEqual(empty.totalNodes, 0)
        self.assertEqual(empty.completionPercent, 0)
        self.assertEqual(empty.statusBreakdown["complete"], 0)


if __name__ == "__main__":
    unittest.main()
