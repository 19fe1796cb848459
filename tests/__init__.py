"""
Section Mosaic Registration Test Suite

This package contains tests for tile graph building, relaxation and
section-by-section registration.

Structure:
- unit/: Unit tests for individual components
- integration/: End-to-end registration of synthetic section stacks
"""
