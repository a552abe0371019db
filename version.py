"""Version information for the site knowledge graph tool."""

APP_NAME = "site-knowledge-graph"
CURRENT_VERSION = "0.1.0"
