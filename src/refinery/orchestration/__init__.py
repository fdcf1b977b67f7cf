"""Orchestration stages: parallel exploration, chain refinement, reflect/critic."""
