"""Services package - scheduling and delivery logic."""
