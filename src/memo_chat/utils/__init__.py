"""Shared utilities: errors, logging, deadlines, text helpers."""
