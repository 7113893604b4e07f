"""Unattended install manifest authoring."""
