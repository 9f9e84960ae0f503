# CareVault Test Suite
"""
Test suite including:
- Unit tests for the auth components
- Integration tests for the user-visible flows
- Security tests (enumeration, tampering, lockout)

Run with: pytest
"""
