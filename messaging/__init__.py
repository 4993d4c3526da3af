"""
Messaging System - Message Intake Pipeline

Filters, batches and dispatches incoming chat messages to the reply
generator.

Components:
- MessageIntake: Validates incoming messages and converts Discord events
- DedupGuard: Drops redelivered message IDs
- LoopGuard: Drops echoes of the bot's own replies
- MessageBuffer: Per-conversation aggregation windows
- ConversationStore: Bounded, expiring conversation history
- AdmissionGate: Bounded concurrency for reply generation
- SweepTimer: Periodic expiry pass
- MessagePipeline: Main orchestrator

Usage:
    from messaging import init_pipeline

    pipeline = await init_pipeline(generator, sender, config)
    pipeline.handle_inbound(inbound_message)
"""

from messaging.intake import InboundMessage, MessageIntake
from messaging.pipeline import MessagePipeline, build_pipeline, init_pipeline

__all__ = ['InboundMessage', 'MessageIntake', 'MessagePipeline', 'build_pipeline', 'init_pipeline']
__version__ = '1.0.0'
