"""
Service Layer Package

Analysis pipeline and storage adapters behind the API routes.

- health_events: reads the journal timeline
- factor_extraction / aggregation / statistical_analysis / lifecycle: scoring pipeline
- discovery_repository: merge and retrieval of persisted discoveries
- discovery_engine: DiscoveryEngine, the entry point the API calls
"""
