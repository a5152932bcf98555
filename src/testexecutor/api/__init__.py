"""HTTP API for testexecutor."""
