"""CRM synchronization -- bidirectional sync between internal entities and external CRMs.

- schemas: Pydantic models for connections, mappings, ledger rows, logs and results
- transformations / accessors / field_mapping: Value transforms and field resolution
- ledger: Correspondence between internal ids and external CRM record ids
- sync: SyncEngine run orchestration (full, incremental, per-mapping, per-record)
- duplicates: Read-only duplicate and unlinked-match detection
- progress: Redis-backed live progress broadcasting
- webhooks / scheduler: Push and poll entry points into the engine
- reporting: Sync logs, statistics and connection diagnostics
- bootstrap: build_services() wiring for one tenant
"""
