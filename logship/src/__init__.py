"""
Edge uploader package for the datalog-to-PostgREST pipeline.

Reads interval snapshots from the device's local append-only datalog,
evaluates the configured measurements, packs them into CSV rows and POSTs
them in batches to a PostgREST table. The resume point is recovered from
the remote table after every restart.

CHANGELOG:
- 2026-10-17: Initial creation

TODO:
- None
"""
