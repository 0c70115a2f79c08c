"""Three-stage knowledge extraction pipeline: scan, match, update."""
