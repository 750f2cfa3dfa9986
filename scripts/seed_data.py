#!/usr/bin/env python3
"""
Seed data script for development
"""
import asyncio
import sys
from pathlib import Path
import random

# Add the project root to the Python path
current_dir = Path(__file__).parent
root_dir = current_dir.parent
sys.path.insert(0, str(root_dir))

AUTHORS = [
    ("seed-asha", "Asha Rao"),
    ("seed-tomas", "Tomás Ortega"),
    ("seed-mei", "Mei Lin"),
    ("seed-kofi", "Kofi Mensah"),
]

PLACES = ["Goa", "Lisbon", "Kyoto", "Accra", "Hampi", ""]

TITLES = [
    "Sunset over the harbour",
    "First rain of the season",
    "Market morning",
    "Lost and found",
    "The long way home",
    "Tea with a stranger",
]

STORIES = [
    "We walked until the light ran out and the fishing boats came in one by one.",
    "The street smelled of wet dust and everyone stopped to watch the sky.",
    "A vendor taught me how to pick the ripest mangoes by their smell alone.",
    "Missed the last bus, found a bakery that stays open all night.",
]

async def seed_posts(count: int = 20) -> int:
    """Seed text-only posts from a few sample authors"""
    from storyfeed.db.session import AsyncSessionLocal, init_db
    from storyfeed.schemas.auth_schema import Identity
    from storyfeed.services.post_service import PostRepository, build_post_draft

    print(f"📝 Seeding {count} posts...")

    await init_db()

    async with AsyncSessionLocal() as db:
        repository = PostRepository(db)

        for i in range(count):
            user_id, name = random.choice(AUTHORS)
            identity = Identity(user_id=user_id, display_name=name)
            draft = build_post_draft(
                identity,
                random.choice(TITLES),
                random.choice(STORIES),
                random.choice(PLACES),
            )
            post = await repository.create(user_id, draft)

            # a few likes so the feed doesn't look brand new
            for _ in range(random.randint(0, 5)):
                await repository.increment_likes(post.id)

    print(f"✅ Created {count} posts")
    return count

async def clear_seed_posts(confirm: bool = False) -> None:
    """Remove every post written by a seed author"""
    if not confirm:
        print("⚠️  WARNING: This will delete all seeded posts!")
        print("   Use --confirm flag to proceed")
        return

    from sqlalchemy import delete
    from storyfeed.db.session import AsyncSessionLocal
    from storyfeed.models.post import Post

    async with AsyncSessionLocal() as db:
        result = await db.execute(
            delete(Post).where(Post.author_id.in_([user_id for user_id, _ in AUTHORS]))
        )
        await db.commit()

    print(f"✅ Deleted {result.rowcount} seeded posts")

def main() -> None:
    """Main entry point"""
    import argparse

    parser = argparse.ArgumentParser(description="Database Seeding")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    posts_parser = subparsers.add_parser("posts", help="Seed posts")
    posts_parser.add_argument("--count", type=int, default=20, help="Number of posts")

    clear_parser = subparsers.add_parser("clear", help="Delete seeded posts")
    clear_parser.add_argument("--confirm", action="store_true", help="Confirm clear")

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(1)

    try:
        if args.command == "posts":
            asyncio.run(seed_posts(args.count))

        elif args.command == "clear":
            asyncio.run(clear_seed_posts(args.confirm))

    except KeyboardInterrupt:
        print("\n⚠️  Operation cancelled by user")
        sys.exit(1)
    except Exception as e:
        print(f"❌ Error: {e}")
        sys.exit(1)

if __name__ == "__main__":
    main()
