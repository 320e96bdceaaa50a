#!/usr/bin/env python3
"""
Archivist index worker

Thin CLI wrapper that delegates to services.worker_service.
"""

from services.worker_service import IndexWorker, main


__all__ = [
    "IndexWorker",
    "main",
]


if __name__ == "__main__":
    raise SystemExit(main())
