import uuid
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select

from botflow.core.config import settings
from botflow.models import Bot, BotContext, OrganizationCredential


class Credentials(BaseModel):
    """Per-organization provider credentials, resolved once per request."""
    openai_api_key: str | None = None
    ghl_api_key: str | None = None
    ghl_location_id: str | None = None


class BotService:
    """Service for bot settings, persona and organization credentials."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_bot(self, bot_id: str) -> dict | None:
        try:
            bid = uuid.UUID(str(bot_id))
        except ValueError:
            return None

        bot = await self.db.get(Bot, bid)
        if not bot:
            return None

        return {
            "id": str(bot.id),
            "organization_id": str(bot.organization_id),
            "name": bot.name,
            "global_context": bot.global_context,
            "specific_context": bot.specific_context,
            "is_active": bot.is_active,
        }

    async def get_business_context(self, bot_id: str) -> dict | None:
        """Persona used in every generation prompt, or None if the bot has none."""
        bid = uuid.UUID(str(bot_id))
        bot = await self.db.get(Bot, bid)
        result = await self.db.execute(select(BotContext).where(BotContext.bot_id == bid))
        ctx = result.scalar_one_or_none()

        bot_context = "\n\n".join(
            part for part in [bot.global_context if bot else None, bot.specific_context if bot else None] if part
        )
        if not ctx and not bot_context:
            return None

        business = {"bot_context": bot_context or None}
        if ctx:
            business.update(
                business_name=ctx.business_name,
                business_type=ctx.business_type,
                industry=ctx.industry,
                tone_of_voice=ctx.tone_of_voice,
                language_style=ctx.language_style,
                unique_value_proposition=ctx.unique_value_proposition,
                target_audience=ctx.target_audience,
                services_offered=ctx.services_offered or [],
                response_guidelines=ctx.response_guidelines or [],
                prohibited_topics=ctx.prohibited_topics or [],
                escalation_triggers=ctx.escalation_triggers or [],
                custom_instructions=ctx.custom_instructions,
            )
        return business

    async def get_credentials(self, organization_id: str | None) -> Credentials:
        """Stored keys for the organization; the OpenAI key falls back to OPENAI_API_KEY."""
        creds = Credentials(openai_api_key=settings.OPENAI_API_KEY)
        if not organization_id:
            return creds

        result = await self.db.execute(
            select(OrganizationCredential).where(
                OrganizationCredential.organization_id == uuid.UUID(str(organization_id)),
                OrganizationCredential.is_active == True
            )
        )
        for row in result.scalars().all():
            if row.service == "openai":
                creds.openai_api_key = row.api_key
            elif row.service == "gohighlevel":
                creds.ghl_api_key = row.api_key
                creds.ghl_location_id = row.location_id
        return creds
