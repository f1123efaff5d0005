"""Common module — shared utilities for leaveflow."""
