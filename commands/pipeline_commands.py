"""
Pipeline Commands - Administrative commands for the message pipeline.

This module provides commands for:
- Viewing pipeline status (queues, admission gate, history, guards)
- Changing the generation concurrency limit
- Changing aggregation settings
- Clearing a channel's conversation history
"""

import logging
from datetime import datetime
from typing import Any, Dict, Optional

import discord
from discord import app_commands
from discord.ext import commands

log = logging.getLogger(__name__)


def build_status_embed(stats: Dict[str, Any], channel_id: Optional[str] = None) -> discord.Embed:
    """Render MessagePipeline.get_stats() as a status embed."""
    admission = stats["admission"]
    store = stats["store"]
    buffer = stats["buffer"]

    embed = discord.Embed(
        title="📊 Pipeline Status",
        color=discord.Color.blue(),
        timestamp=datetime.now()
    )
    embed.add_field(
        name="Admission",
        value=f"**Running:** {admission['outstanding']}/{admission['concurrency']}\n"
              f"**Queued:** {admission['queued']}\n"
              f"**Bounds:** {admission['min_concurrency']}-{admission['max_concurrency']}",
        inline=True
    )
    embed.add_field(
        name="Aggregation",
        value=f"**Collecting:** {buffer['collecting_conversations']}\n"
              f"**Pending messages:** {buffer['total_messages']}\n"
              f"**Window:** {buffer['merge_window_ms']}ms (max {buffer['max_merged_messages']})",
        inline=True
    )
    embed.add_field(
        name="History",
        value=f"**Conversations:** {store['active_conversations']}\n"
              f"**Entries:** {store['total_entries']}\n"
              f"**Limit:** {store['max_history']} / {store['ttl_minutes']:.0f} min",
        inline=True
    )
    embed.add_field(
        name="Guards",
        value=f"**Dedup IDs:** {stats['dedup']['tracked']} ({stats['dedup']['utilization_percent']:.1f}%)\n"
              f"**Sent fingerprints:** {stats['loop_guard']['tracked']}",
        inline=True
    )

    outcomes = stats["outcomes"]
    if outcomes:
        embed.add_field(
            name="Outcomes",
            value="\n".join(f"**{name}:** {count}" for name, count in sorted(outcomes.items())),
            inline=True
        )

    waiting = stats["queue_depths"].get(channel_id, 0) + stats.get("waiting_turns", {}).get(channel_id, 0)
    if waiting:
        embed.set_footer(text=f"{waiting} message(s) waiting in this channel")

    return embed


class PipelineCommands(commands.Cog):
    """Cog for pipeline monitoring and runtime adjustment."""

    pipeline_group = app_commands.Group(
        name="pipeline",
        description="Inspect and adjust the message pipeline",
        default_permissions=discord.Permissions(administrator=True)
    )

    def __init__(self, bot):
        self.bot = bot

    @property
    def pipeline(self):
        return self.bot.message_pipeline

    @pipeline_group.command(name="status", description="Show message pipeline status")
    async def status(self, interaction: discord.Interaction):
        """Show queue depths, admission gate and history statistics."""
        embed = build_status_embed(self.pipeline.get_stats(), str(interaction.channel_id))
        await interaction.response.send_message(embed=embed, ephemeral=True)

    @pipeline_group.command(name="concurrency", description="Change how many replies are generated at once")
    @app_commands.describe(limit="New concurrency limit (clamped to the configured bounds)")
    async def concurrency(self, interaction: discord.Interaction, limit: int):
        """Change the admission gate limit."""
        previous = self.pipeline.gate.concurrency
        try:
            self.pipeline.update_settings(concurrency=limit)
        except ValueError as e:
            await interaction.response.send_message(f"❌ {e}", ephemeral=True)
            return

        current = self.pipeline.gate.concurrency
        note = "" if current == limit else f" (clamped from {limit})"
        log.info("Concurrency changed by %s: %d -> %d", interaction.user, previous, current)
        await interaction.response.send_message(
            f"✅ Concurrency: **{previous}** → **{current}**{note}",
            ephemeral=True
        )

    @pipeline_group.command(name="merge", description="Change message aggregation settings")
    @app_commands.describe(
        window_ms="Aggregation window in milliseconds",
        max_messages="Messages that trigger an immediate reply"
    )
    async def merge(
        self,
        interaction: discord.Interaction,
        window_ms: Optional[int] = None,
        max_messages: Optional[int] = None
    ):
        """Change the aggregation window and size cap."""
        changes = {}
        if window_ms is not None:
            changes["merge_window_ms"] = window_ms
        if max_messages is not None:
            changes["max_merged_messages"] = max_messages

        if not changes:
            await interaction.response.send_message("⚠️ Nothing to change.", ephemeral=True)
            return

        try:
            applied = self.pipeline.update_settings(**changes)
        except ValueError as e:
            await interaction.response.send_message(f"❌ {e}", ephemeral=True)
            return

        summary = "\n".join(f"**{key}:** {value}" for key, value in applied.items())
        await interaction.response.send_message(
            f"✅ Aggregation settings updated\n{summary}",
            ephemeral=True
        )

    @pipeline_group.command(name="clear_history", description="Forget this channel's conversation history")
    async def clear_history(self, interaction: discord.Interaction):
        """Drop the stored history of the current channel."""
        removed = self.pipeline.store.clear(str(interaction.channel_id))
        await interaction.response.send_message(
            f"🗑️ Cleared {removed} history entr{'y' if removed == 1 else 'ies'}.",
            ephemeral=True
        )


async def setup(bot):
    await bot.add_cog(PipelineCommands(bot))
