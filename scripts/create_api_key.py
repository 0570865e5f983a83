"""Script to create an API key for submitting documents."""

import argparse
import asyncio
import sys

sys.path.insert(0, ".")

from src.auth.security import DOCUMENT_SCOPE, create_api_key
from src.db.session import async_session_maker, init_db


async def main(name: str, owner: str, expires_in_days: int | None):
    """Create an API key and print it once."""
    print("Initializing database...")
    await init_db()

    print(f"Creating API key for {owner}...")
    async with async_session_maker() as db:
        api_key, full_key = await create_api_key(
            db,
            name=name,
            owner=owner,
            scopes=[DOCUMENT_SCOPE],
            rate_limit_per_minute=1000,
            rate_limit_per_hour=10000,
            expires_in_days=expires_in_days,
        )
        await db.commit()

        print("\n" + "=" * 60)
        print("API KEY CREATED SUCCESSFULLY")
        print("=" * 60)
        print(f"\nAPI Key: {full_key}")
        print(f"Key ID:  {api_key.id}")
        print(f"Prefix:  {api_key.key_prefix}")
        print("\nSAVE THIS KEY NOW - IT WILL NOT BE SHOWN AGAIN!")
        print("=" * 60)


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Create a document translation API key")
    parser.add_argument("--name", default="Default Key")
    parser.add_argument("--owner", default="admin")
    parser.add_argument("--expires-in-days", type=int, default=None)
    args = parser.parse_args()
    asyncio.run(main(args.name, args.owner, args.expires_in_days))
