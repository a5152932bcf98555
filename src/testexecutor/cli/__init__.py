"""Command line interface for testexecutor."""
