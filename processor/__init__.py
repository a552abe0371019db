"""Entity extraction, resolution, graph building and question generation."""
