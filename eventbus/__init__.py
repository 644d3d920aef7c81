"""Event Bus: durable publish/subscribe with at-least-once webhook delivery."""

__version__ = "1.0.0"
