"""Secondary content acquisition through a JavaScript-rendering scrape service."""
from .firecrawl_client import FirecrawlClient, ScrapeResult

__all__ = ["FirecrawlClient", "ScrapeResult"]
