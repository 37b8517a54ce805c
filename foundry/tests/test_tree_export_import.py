import csv
import io
import json
import unittest

import aiosqlite
import yaml

from foundry.db.repositories.feature_nodes import SqliteFeatureNodeRepository
from foundry.db.sqlite_migrations import run_migrations
from foundry.errors import ValidationError
from foundry.models import FeatureLevel, FeatureTreeNode
from foundry.parsers.tree_export import CSV_HEADERS, build_tree_markdown, resolve_format
from foundry.parsers.tree_import import import_tree, normalize_level, parse_tree_csv
from foundry.services.bulk_resolver import BulkResolver
from foundry.services.feature_tree import FeatureTreeService
from foundry.services.status_cascade import StatusCascade


def _shape(nodes):
    return [(n.title, n.level.value, n.status.value, _shape(n.children)) for n in nodes]


class TreeExportImportTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.db = await aiosqlite.connect(":memory:")
        self.db.row_factory = aiosqlite.Row
        await run_migrations(self.db)
        self.repo = SqliteFeatureNodeRepository(self.db)
        self.service = FeatureTreeService(self.repo)
        cascade = StatusCascade(self.repo)

        self.checkout = await self.service.create_node("project-1", "Checkout")
        self.payment = await self.service.create_node(
            "project-1", "Payment", parent_id=self.checkout.id, description="Card and\nwallet"
        )
        self.shipping = await self.service.create_node("project-1", "Shipping", parent_id=self.checkout.id)
        card = await self.service.create_node("project-1", "Card form", parent_id=self.payment.id)
        await self.service.create_node("project-1", "Validate CVC", parent_id=card.id)
        await self.service.create_node("project-1", "Admin")
        await cascade.update_status("project-1", self.payment.id, "complete")

    async def asyncTearDown(self) -> None:
        await self.db.close()

    async def test_json_export_document(self) -> None:
        document = await self.service.export_tree("project-1", "structured", project_name="Shop!")

        self.assertEqual(document.filename, "Shop_tree.json")
        self.assertTrue(document.mediaType.startswith("application/json"))
        parsed = json.loads(document.content)
        self.assertEqual(parsed["project"]["name"], "Shop!")
        self.assertEqual(parsed["tree"]["metadata"]["totalNodes"], 6)
        root = parsed["tree"]["nodes"][0]
        self.assertEqual(root["title"], "Checkout")
        self.assertEqual(root["status"], "in_progress")
        self.assertEqual(root["children"][0]["description"], "Card and\nwallet")

    async def test_json_export_can_omit_descriptions(self) -> None:
        document = await self.service.export_tree("project-1", "json", include_descriptions=False)

        parsed = json.loads(document.content)
        self.assertNotIn("description", parsed["tree"]["nodes"][0]["children"][0])

    async def test_markdown_outline(self) -> None:
        document = await self.service.export_tree("project-1", "outline-text", project_name="Shop")

        lines = document.content.splitlines()
        self.assertEqual(lines[0], "# Feature Tree: Shop")
        self.assertIn("- [Epic] Checkout (in progress)", lines)
        self.assertIn("  - [Feature] Payment (complete): Card and wallet", lines)
        self.assertIn("      - [Task] Validate CVC (not started)", lines)
        self.assertEqual(document.filename, "Shop_tree.md")

    async def test_csv_rows_follow_tree_order(self) -> None:
        document = await self.service.export_tree("project-1", "tabular", include_descriptions=False)

        rows = list(csv.reader(io.StringIO(document.content)))
        self.assertEqual(rows[0], CSV_HEADERS)
        self.assertEqual(
            [r[1] for r in rows[1:]],
            ["Checkout", "Payment", "Card form", "Validate CVC", "Shipping", "Admin"],
        )
        self.assertEqual(rows[2][4], self.checkout.id)
        self.assertTrue(all(r[6] == "" for r in rows[1:]))

    async def test_unknown_format_is_rejected(self) -> None:
        with self.assertRaises(ValidationError):
            await self.service.export_tree("project-1", "pdf")

    async def test_round_trip_preserves_shape(self) -> None:
        original = await self.service.get_tree("project-1")
        resolver = BulkResolver(self.repo)

        for idx, fmt in enumerate(("json", "yaml", "csv")):
            target = f"copy-{idx}"
            document = await self.service.export_tree("project-1", fmt)
            preview = import_tree(document.content, fmt)
            result = await resolver.bulk_create(target, preview)

            self.assertEqual(result.createdCount, 6)
            copy = await self.service.get_tree(target)
            self.assertEqual(_shape(copy), _shape(original), fmt)


class TreeMarkdownTests(unittest.TestCase):
    def test_multiline_title_stays_on_one_line(self) -> None:
        node = FeatureTreeNode(
            id="n1",
            projectId="project-1",
            title="Checkout\n  and payments",
            level=FeatureLevel.EPIC,
            description="Line one\nline two",
        )

        content = build_tree_markdown([node], "Shop")

        self.assertEqual(
            content.splitlines(),
            ["# Feature Tree: Shop", "", "- [Epic] Checkout and payments (not started): Line one line two"],
        )


class TreeImportTests(unittest.TestCase):
    def test_structured_import_assigns_preorder_temp_ids(self) -> None:
        content = json.dumps({
            "nodes": [
                {"title": "Epic", "level": "epic", "children": [
                    {"title": "Feature", "level": "Feature", "status": "complete", "children": [
                        {"title": "", "level": "Sub Feature"},
                    ]},
                ]},
                {"title": "Second", "level": "epic", "status": "weird"},
            ]
        })

        nodes = import_tree(content, "json")

        self.assertEqual([n.tempId for n in nodes], ["import-0", "import-1", "import-2", "import-3"])
        self.assertEqual([n.parentTempId for n in nodes], [None, "import-0", "import-1", None])
        self.assertEqual(nodes[1].status, "complete")
        self.assertEqual(nodes[2].level, "sub_feature")
        self.assertEqual(nodes[2].title, "Untitled")
        self.assertIsNone(nodes[3].status)

    def test_yaml_bare_list(self) -> None:
        content = yaml.safe_dump([{"title": "Epic", "level": "epic", "children": []}])

        nodes = import_tree(content, "yml")

        self.assertEqual(len(nodes), 1)
        self.assertIsNone(nodes[0].parentTempId)

    def test_csv_resolves_parents_in_any_row_order(self) -> None:
        content = "\n".join([
            "title,LEVEL,parent_id,id",
            "Feature,feature,e1,f1",
            "Epic,epic,,e1",
            "Orphan epic,Epic,zz,e2",
        ])

        nodes = parse_tree_csv(content)

        self.assertEqual([n.tempId for n in nodes], ["csv-0", "csv-1", "csv-2"])
        self.assertEqual(nodes[0].parentTempId, "csv-1")
        self.assertIsNone(nodes[1].parentTempId)
        self.assertIsNone(nodes[2].parentTempId)

    def test_rejects_bad_input(self) -> None:
        with self.assertRaises(ValidationError):
            import_tree("   ", "json")
        with self.assertRaises(ValidationError):
            import_tree("{not json", "json")
        with self.assertRaises(ValidationError):
            import_tree('{"nodes": []}', "json")
        with self.assertRaises(ValidationError):
            import_tree('{"project": {}}', "json")
        with self.assertRaises(ValidationError):
            import_tree("Title\nOnly title", "csv")
        with self.assertRaises(ValidationError):
            import_tree('[{"title": "x", "level": "story"}]', "json")
        with self.assertRaises(ValidationError):
            import_tree("# Feature Tree", "markdown")

    def test_enforces_node_cap(self) -> None:
        content = json.dumps([{"title": f"Epic {i}", "level": "epic"} for i in range(3)])

        with self.assertRaises(ValidationError):
            import_tree(content, "json", max_nodes=2)
        self.assertEqual(len(import_tree(content, "json", max_nodes=3)), 3)

    def test_yaml_alias_fan_out_stops_at_node_cap(self) -> None:
        lines = ["defs:", "  - &a0 {title: Leaf, level: task, children: []}"]
        for depth in range(1, 8):
            refs = ", ".join([f"*a{depth - 1}"] * 10)
            lines.append(f"  - &a{depth} {{title: Level {depth}, level: epic, children: [{refs}]}}")
        lines.append("nodes: [*a7]")

        with self.assertRaisesRegex(ValidationError, "Maximum 200 nodes"):
            import_tree("\n".join(lines), "yaml", max_nodes=200)

    def test_yaml_self_referencing_node_is_rejected(self) -> None:
        content = "nodes:\n  - &loop {title: Loop, level: epic, children: [*loop]}\n"

        with self.assertRaisesRegex(ValidationError, "cannot contain itself"):
            import_tree(content, "yaml")

    def test_yaml_shared_sibling_alias_is_allowed(self) -> None:
        content = "\n".join([
            "defs:",
            "  - &leaf {title: Shared, level: feature}",
            "nodes:",
            "  - {title: Epic, level: epic, children: [*leaf, *leaf]}",
        ])

        nodes = import_tree(content, "yaml")

        self.assertEqual([n.title for n in nodes], ["Epic", "Shared", "Shared"])
        self.assertEqual([n.parentTempId for n in nodes], [None, "import-0", "import-0"])

    def test_csv_oversized_field_is_a_validation_error(self) -> None:
        content = "Title,Level,Description\nEpic,epic," + "x" * 200_000

        with self.assertRaisesRegex(ValidationError, "Invalid CSV"):
            import_tree(content, "csv")

    def test_csv_stops_at_node_cap(self) -> None:
        content = "Title,Level\n" + "\n".join(f"Epic {i},epic" for i in range(5))

        with self.assertRaisesRegex(ValidationError, "Maximum 2 nodes"):
            import_tree(content, "csv", max_nodes=2)

    def test_level_and_format_aliases(self) -> None:
        self.assertEqual(normalize_level("sub-feature"), "sub_feature")
        self.assertEqual(normalize_level("Subfeature"), "sub_feature")
        self.assertEqual(resolve_format(" MD "), "markdown")
        self.assertEqual(resolve_format("tabular"), "csv")


if __name__ == "__main__":
    unittest.main()
