"""Service layer for MarketSync.

Connection registry, durable work queues, change watchers, the export
orchestrator, the order importer, and the scheduler that drives them.
Modules are imported directly (``from src.services.work_queue import
WorkQueue``) to keep the error package and the API client free of import
cycles.
"""
