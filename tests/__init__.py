"""Test package for batchbrake."""
