"""VoiceAssist Phase 9 Test Suite.

This package contains comprehensive unit and integration tests for
VoiceAssist V2, covering:

- Unit tests: Testing individual components in isolation
- Integration tests: Testing API endpoints and system integration
- Contract tests: Testing API contracts and interfaces

Test organization:
- tests/unit/: Unit tests for core functionality
- tests/integration/: Integration tests for API endpoints
- tests/contract/: Contract tests for API compatibility
- tests/conftest.py: Shared pytest fixtures and configuration
"""

__version__ = "1.0.0"
