"""CNC gateway network discovery and configuration overlay."""
