# Overview: Permission category constants for grouping related permissions.


class PermissionCategory:
    """Permission categories, matching the code prefixes."""
    NAVIGATION = "NAV"
    DATA = "DATA"
    OPERATIONS = "OP"
    CONFIGURATION = "CFG"
