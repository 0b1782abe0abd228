"""Request admission control (rate limiting, bot and shield detection)."""
