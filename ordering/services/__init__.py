"""
                        Services Module

Business logic, one module per concern. Pluggable backends follow the
base / implementation / factory layout.

Services:
    - guests: guest identity resolution, promotion and cleanup
    - cart: cart aggregation with optimistic versioning
    - orders: checkout and the order state machine
    - notifications: admin room broadcasts (local or Redis)
    - catalog: category and menu item administration
    - reports: CSV / Excel / PDF order exports
"""
