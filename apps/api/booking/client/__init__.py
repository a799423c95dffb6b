"""Offline-capable device client: HTTP executor, durable queue, sync driver."""
