import asyncio
import platform

import discord
from discord.ext import commands

import utils.func as func
from AI import OpenAIClient
from messaging import MessageIntake, init_pipeline
from utils.message_sender import DiscordSender
from utils.pipeline_config import load_pipeline_config

# First, load the configuration without logging to avoid premature logger creation
config_yaml = func.load_config()
debug_mode = config_yaml.get("Options", {}).get("debug_mode", False)

# Next, configure logging
log = func.setup_logging(debug_mode)

# For Windows compatibility with asyncio
if platform.system() == "Windows":
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

# Set up Discord intents
intents = discord.Intents.default()
intents.message_content = True


class BridgeBot(commands.Bot):
    """Custom bot class with synchronization control"""

    def __init__(self):
        super().__init__(
            command_prefix="/",
            intents=intents,
            help_command=None
        )
        self.synced = False  # Sync control flag
        self.intake = MessageIntake()
        self.generator = None
        self.message_pipeline = None

    async def setup_hook(self):
        """Initial async setup"""
        log.debug("Initializing Message System")

        pipeline_config = load_pipeline_config(
            config_yaml.get("Options", {}).get("config_dir", "config")
        )
        self.generator = OpenAIClient.from_config(config_yaml.get("OpenAI", {}))

        # A pipeline that cannot start its sweep must abort startup
        self.message_pipeline = await init_pipeline(
            self.generator,
            DiscordSender(self),
            pipeline_config
        )

        await self.load_extension('commands.pipeline_commands')

    async def close(self):
        """Cleanup when bot is shutting down"""
        if self.message_pipeline is not None:
            await self.message_pipeline.shutdown()
            log.debug("Message pipeline shutdown complete")

        if self.generator is not None:
            await self.generator.close()

        await super().close()

    async def on_ready(self):
        """Bot ready event handler"""
        if not self.synced:
            await self.tree.sync()  # Sync slash commands
            self.synced = True
            log.info("Logged in as %s!", self.user)


# Initialize bot instance
bot = BridgeBot()


@bot.event
async def on_message(message):
    """Process incoming messages"""
    try:
        # Skip messages starting with // (hidden messages)
        if message.content.startswith("//"):
            return

        inbound = bot.intake.from_discord(message, bot.user.id if bot.user else None)
        if inbound is not None:
            bot.message_pipeline.handle_inbound(inbound)

        # Process traditional commands
        await bot.process_commands(message)

    except Exception as e:
        log.error("Message processing error: %s", e)


@bot.event
async def on_command_error(ctx, error):
    """Handle command errors"""
    # Silently ignore CommandNotFound errors
    if isinstance(error, commands.CommandNotFound):
        return

    log.error("Command error in %s: %s", ctx.command, error)


# Start the bot
if __name__ == "__main__":
    try:
        bot.run(config_yaml["Discord"]["token"], log_handler=None)
    except KeyError:
        log.critical("Missing Discord.token in config.yml!")
    except discord.LoginFailure:
        log.critical("Invalid authentication token!")
    except Exception as e:
        log.critical("Fatal runtime error: %s", e)
