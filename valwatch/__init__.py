"""valwatch: validator monitoring with durable jobs and Telegram notifications."""

__version__ = "0.1.0"
