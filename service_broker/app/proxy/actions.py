"""
Login handshake steps recognized by the proxy gateway.
"""

from enum import Enum


class BootstrapAction(str, Enum):
    """Steps during which raw cookies may cross the client boundary.

    A request without an action is a steady-state passthrough whose cookies
    come only from the session store.
    """
    START_LOGIN = "start_login"
    LOGIN = "login"
    SWITCH_ACCOUNT = "switch_account"
