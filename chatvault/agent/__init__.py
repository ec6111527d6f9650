"""Token estimation, request assembly and checkpoint compaction."""
