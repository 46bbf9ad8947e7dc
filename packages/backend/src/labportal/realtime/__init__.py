"""Real-time delivery to the browser UI.

Learn: Row changes flow Postgres NOTIFY → relay → Redis → per-view
subscription → ReconciledCollection, and from there over a WebSocket
as collection snapshots. This package is the last hop.
"""
