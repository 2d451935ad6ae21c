"""Fast path: routing decisions and the synchronous responder."""
