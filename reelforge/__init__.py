"""
ReelForge Content Pipeline Engine

Turns a topic or a source URL into a finished short-form video and
distributes it, driving browser-automated providers through one pipeline.
Strategy + Script + Image + Audio + Video + Compilation + Distribution.

Usage:
    from reelforge.runtime import get_runtime

    runtime = get_runtime()
    ack = await runtime.trigger_topic("user-1", "space travel")
    await runtime.workers.start()
"""

__version__ = "1.0.0"
