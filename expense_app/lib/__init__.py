"""
Library modules for the expense tracker backend.

Usage:
    from expense_app.lib.logging_utils import get_logger
    from expense_app.lib.sqlite_utils import get_connection
"""
