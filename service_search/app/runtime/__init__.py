"""Runtime state for the search service: metrics facade and alpha store."""
