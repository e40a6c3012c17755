#!/usr/bin/env python3
"""
Migrate existing memories to the current conventions.

- Project IDs that are git URLs are normalized:
  git@github.com:owner/repo.git -> github.com/owner/repo
- Categories are lowercased, and every category referenced by a memory is
  registered in the category hierarchy.

Usage:
    python migrate_memories.py --dry-run  # Preview changes
    python migrate_memories.py            # Apply migration
"""

from __future__ import annotations

import argparse
import sys
from collections import defaultdict
from dataclasses import dataclass, field, replace
from pathlib import Path

from categories import CategoryHierarchy
from config import CONFIG
from errors import MemoryGraphError, ValidationError
from models import Memory, SearchFilters, validate_category_name
from server import CATEGORIES_FILE
from utils import is_git_url, normalize_git_url
from vector_store import VectorStore


@dataclass
class MigrationPlan:
    projects: dict[tuple[str, str], list[str]] = field(default_factory=lambda: defaultdict(list))
    categories: dict[tuple[str, str], list[str]] = field(default_factory=lambda: defaultdict(list))
    missing_categories: set[str] = field(default_factory=set)
    invalid_categories: set[str] = field(default_factory=set)
    total: int = 0

    @property
    def empty(self) -> bool:
        return not (self.projects or self.categories or self.missing_categories)


def plan_migration(memories: list[Memory], known_categories: set[str]) -> MigrationPlan:
    """Work out which memories need which changes. Pure; touches nothing."""
    plan = MigrationPlan(total=len(memories))
    for memory in memories:
        if is_git_url(memory.project):
            new_project = normalize_git_url(memory.project)
            if new_project != memory.project:
                plan.projects[(memory.project, new_project)].append(memory.id)

        category = memory.category.strip().lower()
        if category != memory.category:
            plan.categories[(memory.category, category)].append(memory.id)
        if category in known_categories:
            continue
        try:
            validate_category_name(category)
        except ValidationError:
            plan.invalid_categories.add(category)
            continue
        plan.missing_categories.add(category)
    return plan


def print_plan(plan: MigrationPlan) -> None:
    print("=" * 70)
    print("MIGRATION PLAN")
    print("=" * 70)
    print(f"\nScanned {plan.total} memories (active and trashed)\n")

    if plan.empty:
        print("✓ Nothing to migrate!")
    for (old, new), ids in sorted(plan.projects.items()):
        print(f"  {len(ids):3d} memories: project {old}")
        print(f"       {'':3s}      -> {new}\n")
    for (old, new), ids in sorted(plan.categories.items()):
        print(f"  {len(ids):3d} memories: category {old} -> {new}")
    for name in sorted(plan.missing_categories):
        print(f"  register category: {name}")
    for name in sorted(plan.invalid_categories):
        print(f"  ⚠ category '{name}' is not a valid name; fix it with category_update")
    print("\n" + "=" * 70)


def apply_plan(plan: MigrationPlan, store: VectorStore, hierarchy: CategoryHierarchy) -> int:
    """Apply a plan; returns the number of memory rows patched."""
    for name in sorted(plan.missing_categories):
        hierarchy.ensure(name)
    updated = 0
    for (_, new_project), ids in plan.projects.items():
        updated += store.patch_payload(ids, {"project": new_project})
    for (_, new_category), ids in plan.categories.items():
        updated += store.patch_payload(ids, {"category": new_category})
    return updated


def migrate(db_path: Path, data_dir: Path, dry_run: bool = True) -> int:
    if not db_path.exists():
        print(f"Error: Database not found at {db_path}")
        return 1

    print(f"Opening database: {db_path}")
    config = replace(CONFIG, db_path=db_path, data_dir=data_dir)
    store = VectorStore(config)
    hierarchy = CategoryHierarchy(data_dir / CATEGORIES_FILE, store)

    memories = store.scroll_all(SearchFilters(include_trashed=True))
    plan = plan_migration(memories, set(hierarchy.names()))
    print_plan(plan)

    if dry_run:
        print("\n⚠ DRY RUN MODE - No changes applied")
        print("Run without --dry-run to apply migration")
    elif not plan.empty:
        print("\nApplying migration...")
        updated = apply_plan(plan, store, hierarchy)
        print(f"\n✓ Migration complete! Updated {updated} memory rows")
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Migrate memories to normalized project IDs and registered categories",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python migrate_memories.py --dry-run  # Preview changes
  python migrate_memories.py            # Apply migration
        """,
    )
    parser.add_argument("--dry-run", action="store_true", help="Preview changes without applying them")
    parser.add_argument("--db-path", type=Path, default=CONFIG.db_path, help="LanceDB directory")
    parser.add_argument("--data-dir", type=Path, default=CONFIG.data_dir, help="Directory holding categories.json")
    args = parser.parse_args(argv)

    try:
        return migrate(args.db_path, args.data_dir, dry_run=args.dry_run)
    except MemoryGraphError as e:
        print(f"Error: {e}")
        return 1
    except KeyboardInterrupt:
        print("\n\nMigration cancelled")
        return 1


if __name__ == "__main__":
    sys.exit(main())
