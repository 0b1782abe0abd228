"""OAuth 2.1 broker: authorization flow, callbacks and bearer token checks."""
