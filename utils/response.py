# Copyright (C) 2026 grodz
#
# This file is part of Encore.
#
# Encore is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE. See the
# GNU General Public License for more details.
#
# You should have received a copy of the GNU General Public License
# along with this program. If not, see <https://www.gnu.org/licenses/>.

"""Response utilities for prefix commands.

Provides ResponseMixin so every command answers the same way, plus the
display helpers used when building reply text.
"""

import discord
from discord.ext import commands
from loguru import logger


def escape_markdown(text: str) -> str:
    """Escape characters Discord would treat as formatting in track titles.

    Titles end up inside **bold** markers, so asterisks and underscores in
    them would otherwise close or open emphasis early.
    """
    for char in ("\\", "*", "_", "~", "`", "|"):
        text = text.replace(char, "\\" + char)
    return text


# =============================================================================
# DISPLAY TRUNCATION
# =============================================================================
# Always truncate BEFORE escape_markdown (escaping can add characters).

QUEUE_TITLE_MAX = 80       # 25 lines x ~110 chars stays well under MESSAGE_MAX
MESSAGE_MAX = 2000         # Discord message content hard limit


def truncate_for_display(text: str, max_length: int) -> str:
    """Cut text to max_length characters, marking the cut with "...".

    The marker counts toward max_length, so the result never exceeds it.
    """
    if len(text) > max_length:
        text = text[: max(0, max_length - 3)].rstrip() + "..."
    return text


class ResponseMixin:
    """Mixin providing standardized replies for prefix-command cogs.

    Requirements:
        self.bot must have a config_manager with msg(key, **kwargs) -> str

    Usage:
        class MyCog(ResponseMixin, commands.Cog):
            async def my_command(self, ctx):
                await self.reply(ctx, self.msg("volume_set", level=40))
    """

    def msg(self, key: str, **kwargs) -> str:
        return self.bot.config_manager.msg(key, **kwargs)

    async def reply(self, ctx: commands.Context, text: str) -> None:
        """Reply to the invoking message; falls back to a plain send if it's gone."""
        text = truncate_for_display(text, MESSAGE_MAX)
        allowed = discord.AllowedMentions.none()
        try:
            await ctx.reply(text, mention_author=False, allowed_mentions=allowed)
        except discord.HTTPException as e:
            # 50035: referenced message was deleted before we answered
            logger.debug(f"reply failed ({e}), sending plainly")
            try:
                await ctx.send(text, allowed_mentions=allowed)
            except discord.HTTPException as e:
                logger.warning(f"could not answer command in #{ctx.channel}: {e}")
