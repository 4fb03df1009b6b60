"""
AutoSpotting - replaces on-demand autoscaling group instances with spot instances.

Continuously lowers the cost of an EC2 fleet by swapping on-demand members of
opted-in Auto Scaling Groups for compatible, cheaper spot instances while keeping
group capacity and scaling behaviour intact.
"""

__version__ = "1.0.0"
__author__ = "AutoSpotting Team"

from autospotting.core.exceptions import AutoSpottingError

__all__ = ["AutoSpottingError"]
