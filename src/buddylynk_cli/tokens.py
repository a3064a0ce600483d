import asyncio

import click

from buddylynk_backend.auth import create_session
from buddylynk_backend.redis_cache import close_redis_client, get_redis_client


async def _issue(user_id: str, ttl: int) -> str:
    redis_client = await get_redis_client()
    try:
        return await create_session(redis_client, user_id, ttl=ttl)
    finally:
        await close_redis_client()


@click.command()
@click.argument("user_id")
@click.option("--ttl", default=86400, show_default=True, type=int, help="Token lifetime in seconds")
def issue_token(user_id: str, ttl: int):
    """Create a bearer token for USER_ID (development logins)."""
    token = asyncio.run(_issue(user_id, ttl))
    click.echo(token)
