"""
Integration Tests Package for the Parking Desk

These tests wire the real services together on the in-memory store and
drive them through the command processor and the command line:
1. End-to-end desk scenarios (entry, exit, receipt)
2. Several desks sharing one store
3. Command line entry point
"""
