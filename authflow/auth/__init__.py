"""
Authentication package for authflow.

This package contains the session store, token policy, auth gateway and the
protocol machine that sequences login, registration, password reset,
refresh and logout.
"""
