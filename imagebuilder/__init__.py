"""
Image builder: provision a temporary VM in the cloud and capture it as an image.

Usage:
    from imagebuilder import configure_logging
    from imagebuilder.provisioning import ImageBuilder

    configure_logging()  # or ImageBuilder(setup_logging=True)
    result = ImageBuilder().run(steps)
"""

from imagebuilder.logging_config import configure_logging

__version__ = "0.1.0"

__all__ = ["configure_logging", "__version__"]
