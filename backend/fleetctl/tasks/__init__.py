"""Task orchestration: targeting, dispatch, aggregation and scheduling."""
