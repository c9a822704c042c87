"""JSONL sidecar reader/writer."""
