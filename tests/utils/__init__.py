"""Test utilities for stackharness.

- polling: waiting on conditions with a timeout
- fakes: in-memory stand-ins for services and client tools
- binaries: skip conditions for tests that need real server binaries
"""
