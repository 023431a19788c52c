"""Cache tiers, projection and render-state helpers."""
