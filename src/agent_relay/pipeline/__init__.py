"""Sequential multi-step pipelines with approval gates."""
