"""
                Restaurant Ordering Platform

Backend for guest and registered customer ordering: carts, checkout,
a diet-partitioned order workflow for admins and live admin-room updates.

Author: Khalil_Bannouri
Version: 1.0.0
License: MIT
"""

__version__ = "1.0.0"
__author__ = "Khalil_Bannouri"
