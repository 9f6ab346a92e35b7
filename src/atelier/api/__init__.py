"""HTTP API for Atelier.

- POST /api/v1/pipeline/run - single-image transform
- /api/v1/batch - batch submission, event stream, cancel, retry, snapshot
"""
