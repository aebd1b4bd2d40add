"""
Core modules for AI Carbon Monitor.

This package contains the collection pipeline: table parsing, command
execution, emission estimates, change detection and scheduling.
"""
