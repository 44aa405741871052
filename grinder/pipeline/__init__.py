"""Acquisition pipeline: content cache, candidates, retry loop and orchestrator."""
