#!/usr/bin/env python
"""
Seed Nudge Templates

Writes the built-in nudge templates to the nudgeTemplates collection of the
configured document store (MILO_MONGODB_URL).

Usage:
    python scripts/seed_nudge_templates.py [--force]

Idempotent: templates that already exist are skipped unless --force is given.
"""

import argparse
import asyncio
import sys
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from milo_nudges.database import create_document_store
from milo_nudges.models.nudge import Nudge
from milo_nudges.services.nudge_repository import TEMPLATES_COLLECTION
from milo_nudges.services.store.base import SERVER_TIMESTAMP

WEEKDAYS = {1, 2, 3, 4, 5}
EVERY_DAY = {1, 2, 3, 4, 5, 6, 7}

TEMPLATES_TO_SEED = {
    "morning_hydration": Nudge(
        content="Start the day with a glass of water.",
        scheduled_days=EVERY_DAY,
        scheduled_minutes=7 * 60 + 30,
    ),
    "midday_stretch": Nudge(
        content="Stand up and stretch for two minutes.",
        scheduled_days=WEEKDAYS,
        scheduled_minutes=12 * 60,
    ),
    "afternoon_walk": Nudge(
        content="A short walk helps you refocus.",
        scheduled_days=WEEKDAYS,
        scheduled_minutes=15 * 60 + 30,
    ),
    "evening_reflection": Nudge(
        content="Take a moment to note one thing that went well today.",
        scheduled_days=EVERY_DAY,
        scheduled_minutes=20 * 60,
    ),
    "weekend_plan": Nudge(
        content="Plan one thing you are looking forward to this weekend.",
        scheduled_days={6},
        scheduled_minutes=10 * 60,
    ),
}


async def seed_nudge_templates(force: bool = False):
    """
    Seed the template collection.

    Args:
        force: Overwrite templates that already exist
    """
    store = create_document_store()
    await store.initialize()

    try:
        seeded_count = 0
        skipped_count = 0

        for template_id, template in TEMPLATES_TO_SEED.items():
            existing = await store.get(TEMPLATES_COLLECTION, template_id)

            if existing.exists and not force:
                print(f"Skipping {template_id} - already exists")
                skipped_count += 1
                continue

            data = template.to_document()
            data["createdAt"] = SERVER_TIMESTAMP
            await store.set(TEMPLATES_COLLECTION, template_id, data)
            print(f"Seeded {template_id}")
            seeded_count += 1

        print(f"\n{'='*60}")
        print("Nudge template seeding complete!")
        print(f"  Seeded: {seeded_count} templates")
        print(f"  Skipped: {skipped_count} templates (already exist)")
        print(f"{'='*60}")

    except Exception as e:
        print(f"Error seeding nudge templates: {e}")
        raise
    finally:
        await store.close()


def main():
    parser = argparse.ArgumentParser(
        description="Seed built-in nudge templates into the document store"
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Overwrite templates that already exist"
    )
    args = parser.parse_args()

    asyncio.run(seed_nudge_templates(force=args.force))


if __name__ == '__main__':
    main()
