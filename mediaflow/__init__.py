"""MediaFlow transcoding orchestration service.

Drives uploaded videos through rendition encoding, manifest generation and
completion announcement across a fleet of stateless workers sharing one job store.

Modules:
    - core: Configuration, database, Redis, Celery, logging, metrics, storage
    - modules.lock: Distributed lock service
    - modules.events: Event schemas and Redis Streams event bus
    - modules.transcoding: Job store, orchestrator, pollers and handlers
"""

__version__ = "0.1.0"
