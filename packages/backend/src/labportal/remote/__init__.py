"""Remote backend adapters — the real implementations of core.backend.

Learn: Row changes reach a live view through three hops:
1. Postgres trigger → NOTIFY row_changed
2. Relay process → Redis PUBLISH labportal:changes:{table}
3. RedisChangeChannel SUBSCRIBE → subscriber queue → ReconciledCollection

Auth goes over HTTP to the hosted auth service (httpx); point lookups
and view queries go straight to Postgres (SQLAlchemy async).
"""
