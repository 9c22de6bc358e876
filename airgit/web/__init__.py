"""HTTP surface for triggering and polling agent jobs."""
