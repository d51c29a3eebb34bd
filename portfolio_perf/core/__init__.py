"""Logging and telemetry setup for the engine."""
