"""Simulated training engine, pause/cancel controller and gradient pipeline."""
