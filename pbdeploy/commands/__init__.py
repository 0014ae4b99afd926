"""pbdeploy CLI commands"""
