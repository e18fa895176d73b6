"""
sitebuild - Static site build pipeline.

Task graph with prod/dev transform selection, live-reload dev server,
file watchers and FTP deploy.
"""

__version__ = "0.1.0"
