TOPICS = {
    "nags_lookup_results": {
        "partitions": 6,
        "replication_factor": 3,
        "retention_ms": 604800000,
    },
    "nags_manual_research": {
        "partitions": 3,
        "replication_factor": 3,
        "retention_ms": 2592000000,
    },
}
