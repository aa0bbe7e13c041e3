"""Shared configuration, exceptions, locks and cache helpers."""
