"""Application modules.

- lock: Cross-process mutual exclusion keyed by (tenant, video)
- events: Inbound/outbound event contracts and the event bus
- transcoding: Job lifecycle, orchestration, pollers and admin API
"""
