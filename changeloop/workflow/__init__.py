"""Workflow steps and drivers for the change cycle."""
