"""Database seeder for listing cache benchmarks."""
import argparse
import asyncio
import random
import time
from datetime import datetime, timedelta, timezone

from app.database import Base, async_session, engine
from app.models import Article, Comment, User

TOPICS = ["python", "fastapi", "postgresql", "redis", "caching", "http",
          "etags", "pagination", "docker", "testing", "performance", "security"]


async def seed(small: bool = False):
    num_users = 10 if small else 50
    num_articles = 100 if small else 10000
    max_comments = 2 if small else 5

    print(f"Seeding: {num_users} users, {num_articles} articles, up to {max_comments} comments each")
    start = time.perf_counter()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    async with async_session() as session:
        users = [
            User(name=f"User {i}", email=f"user_{i:04d}@example.com")
            for i in range(num_users)
        ]
        session.add_all(users)
        await session.flush()
        print(f"  Created {len(users)} users")

        total_comments = 0
        batch_size = 500
        for batch_start in range(0, num_articles, batch_size):
            batch_end = min(batch_start + batch_size, num_articles)
            batch = []
            for i in range(batch_start, batch_end):
                topic = random.choice(TOPICS)
                created = datetime.now(timezone.utc) - timedelta(days=random.randint(0, 365))
                batch.append(Article(
                    title=f"Article {i}: notes on {topic}",
                    # Long enough that every listing entry is truncated.
                    content=f"This is the full content of article {i} about {topic}. " * 20,
                    # About one in ten stays unpublished and sorts last.
                    published_at=created if random.random() > 0.1 else None,
                    created_at=created,
                    author_id=random.choice(users).id,
                ))
            session.add_all(batch)
            await session.flush()

            for article_id in (a.id for a in batch):
                for _ in range(random.randint(0, max_comments)):
                    session.add(Comment(
                        content=f"Useful write-up, thanks! ({random.choice(TOPICS)})",
                        article_id=article_id,
                        user_id=random.choice(users).id,
                    ))
                    total_comments += 1
            await session.flush()

            print(f"  Batch {batch_start}-{batch_end}: articles created")

        await session.commit()

    elapsed = time.perf_counter() - start
    print(f"\nSeeding complete in {elapsed:.1f}s")
    print(f"  Users: {num_users}")
    print(f"  Articles: {num_articles}")
    print(f"  Comments: {total_comments}")


def main():
    parser = argparse.ArgumentParser(description="Seed the content database")
    parser.add_argument("--small", action="store_true", help="Use small dataset (100 articles)")
    args = parser.parse_args()
    asyncio.run(seed(small=args.small))


if __name__ == "__main__":
    main()
