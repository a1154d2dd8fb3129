"""PlanetScale chat agent: tool-augmented completions streamed as SSE."""
