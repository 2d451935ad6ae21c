"""Job type handlers consumed by the worker through ``handle(payload) -> HandlerResult``."""
