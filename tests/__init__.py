"""
Imagery relay test suite

Structure:
- unit/: Unit tests for individual components (provider mocked at the HTTP session)
"""
