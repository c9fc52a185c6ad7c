"""Seed demo users with ACTIVE prompts so discovery has candidates."""
import asyncio
import sys
sys.path.insert(0, ".")

from sqlalchemy import select

from resonance.config import get_settings
from resonance.database import get_session_factory
from resonance.models import DeployedPrompt, PromptStatus, User
from resonance.utils.clock import days_from_now, utcnow


DEMO_PROMPTS = [
    {
        "username": "ada",
        "display_name": "Ada",
        "theme_id": "travel",
        "theme_name": "Travel",
        "question": "What's the most spontaneous trip you've ever taken?",
    },
    {
        "username": "grace",
        "display_name": "Grace",
        "theme_id": "travel",
        "theme_name": "Travel",
        "question": "What's the most spontaneous trip you've ever taken?",
    },
    {
        "username": "linus",
        "display_name": "Linus",
        "theme_id": "travel",
        "theme_name": "Travel",
        "question": "Which city would you move to tomorrow?",
    },
    {
        "username": "margaret",
        "display_name": "Margaret",
        "theme_id": "food",
        "theme_name": "Food",
        "question": "What's the most spontaneous trip you've ever taken?",
    },
    {
        "username": "alan",
        "display_name": "Alan",
        "theme_id": "books",
        "theme_name": "Books",
        "question": "Which book changed your mind about something?",
    },
]


async def seed():
    ttl_days = get_settings().PROMPT_TTL_DAYS
    async with get_session_factory()() as session:
        for p in DEMO_PROMPTS:
            existing = await session.execute(select(User).where(User.username == p["username"]))
            user = existing.scalar_one_or_none()
            if user is not None:
                print(f"  User {p['username']} already exists, skipping.")
                continue

            user = User(username=p["username"], display_name=p["display_name"])
            session.add(user)
            await session.flush()
            now = utcnow()
            session.add(
                DeployedPrompt(
                    user_id=user.id,
                    theme_id=p["theme_id"],
                    theme_name=p["theme_name"],
                    question=p["question"],
                    status=PromptStatus.ACTIVE,
                    deployed_at=now,
                    expires_at=days_from_now(ttl_days, now),
                )
            )
            print(f"  Seeded {p['username']} with a {p['theme_id']} prompt")
        await session.commit()
    print("Done seeding prompts.")


if __name__ == "__main__":
    asyncio.run(seed())
