"""
Imagery relay

- Fetches provider tiles for several catalog layers at one XYZ coordinate and
  alpha-composites them, newest on top (imagery.compositor)
- Relays provider thumbnails byte-for-byte (imagery.thumbnail)
- Serves both over HTTP (imagery.server)
"""

__version__ = "0.1.0"
