"""BitTorrent indexer building blocks: bencode, peer metadata fetching, tracker scraping, metrics and health endpoints."""

__version__ = "0.1.0"