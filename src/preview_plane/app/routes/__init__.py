"""HTTP route modules for the preview plane."""
