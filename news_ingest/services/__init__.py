# news_ingest/services/__init__.py
"""
Ingestion pipeline services.

Import concrete services from their modules, e.g.
``from news_ingest.services.ingestion import IngestionService``.
"""
