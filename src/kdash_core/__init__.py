"""kdash core: metered Klaviyo client and dashboard snapshot aggregation."""
