"""Orchestration around the remote layer: storage, events, jobs and surfaces."""
