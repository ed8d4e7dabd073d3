from .crawler import Crawler, run_crawler
from .settings import Settings

__version__ = "0.1.0"

__all__ = ["Crawler", "Settings", "run_crawler", "__version__"]
