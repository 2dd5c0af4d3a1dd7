"""Test suite for FormGuard Reactive Validation Engine.

This package contains tests for:
- Key path algebra and the key path multi-map
- Error records, error builder and exception hierarchy
- Async job throttling, forcing and cancellation
- Nested object discovery and change watchers
- Validator handlers, debouncing and nested error merging
- Event system (emission, serialization)
"""
