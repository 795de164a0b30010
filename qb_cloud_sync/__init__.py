"""
qb-cloud-sync: moves completed qBittorrent downloads to cloud storage with rclone.
"""

__version__ = "1.0.0"
