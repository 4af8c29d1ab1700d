"""iziBrokerz rate-limit service."""
