"""
Participant Management
Evicts members from pooled channels and rotates their access tokens.
"""

import logging
from abc import ABC, abstractmethod
from typing import Optional

from telegram import Bot
from telegram.error import BadRequest, Forbidden, TelegramError

from config import Config

logger = logging.getLogger(__name__)

# BadRequest texts meaning the identity is already gone from the chat
_ALREADY_ABSENT_MARKERS = (
    "user not found",
    "participant_id_invalid",
    "user_not_participant",
    "user is not a member",
    "member not found",
)


class ParticipantManager(ABC):
    """Channel membership operations the pool needs for recycling"""

    @abstractmethod
    async def evict_participant(self, channel_id: str, participant_id: int) -> bool:
        """Remove one identity; True when it is no longer in the channel"""

    @abstractmethod
    async def rotate_access_token(self, channel_id: str, current_token: Optional[str] = None) -> Optional[str]:
        """Invalidate current_token and return a fresh one, or None on failure"""

    @abstractmethod
    async def channel_exists(self, channel_id: str) -> bool:
        """False when the backing chat is gone"""


class TelegramParticipantManager(ParticipantManager):
    """Telegram implementation: kick via ban+unban, tokens are invite links"""

    def __init__(self, bot: Optional[Bot] = None, member_limit: Optional[int] = None):
        if bot is None:
            if not Config.BOT_TOKEN:
                raise ValueError("TELEGRAM_BOT_TOKEN is required for participant management")
            bot = Bot(Config.BOT_TOKEN)
        self.bot = bot
        self.member_limit = member_limit or Config.INVITE_MEMBER_LIMIT

    async def evict_participant(self, channel_id: str, participant_id: int) -> bool:
        try:
            await self.bot.ban_chat_member(chat_id=channel_id, user_id=participant_id)
            # Unban so the identity can join a future trade in this channel
            await self.bot.unban_chat_member(chat_id=channel_id, user_id=participant_id, only_if_banned=True)
            logger.info(f"👋 EVICTED: user {participant_id} from channel {channel_id}")
            return True
        except BadRequest as e:
            text = str(e).lower()
            if any(marker in text for marker in _ALREADY_ABSENT_MARKERS):
                logger.debug(f"User {participant_id} already absent from {channel_id}: {e}")
                return True
            logger.warning(f"⚠️ EVICT_FAILED: user {participant_id} channel {channel_id}: {e}")
            return False
        except Forbidden as e:
            logger.warning(f"⚠️ EVICT_FORBIDDEN: bot lacks rights in {channel_id}: {e}")
            return False
        except TelegramError as e:
            logger.error(f"❌ EVICT_ERROR: user {participant_id} channel {channel_id}: {e}")
            return False

    async def rotate_access_token(self, channel_id: str, current_token: Optional[str] = None) -> Optional[str]:
        try:
            if current_token:
                try:
                    await self.bot.revoke_chat_invite_link(chat_id=channel_id, invite_link=current_token)
                except BadRequest as e:
                    # Link already revoked or expired
                    logger.debug(f"Revoke skipped for {channel_id}: {e}")
            link = await self.bot.create_chat_invite_link(chat_id=channel_id, member_limit=self.member_limit)
            logger.info(f"🔗 TOKEN_ROTATED: channel {channel_id}")
            return link.invite_link
        except TelegramError as e:
            logger.error(f"❌ TOKEN_ROTATION_FAILED: channel {channel_id}: {e}")
            return None

    async def channel_exists(self, channel_id: str) -> bool:
        try:
            await self.bot.get_chat(chat_id=channel_id)
            return True
        except BadRequest as e:
            if "chat not found" in str(e).lower():
                return False
            raise
        except Forbidden:
            # Bot was removed from the chat
            return False
