"""
Constants
Centralised storage for service responses, stage names and tag rules.
"""
GREETING = "Hello from ValenCloud!"
HEALTH_OK = {"status": "ok"}

STAGES = ["test", "build", "publish"]
LATEST_TAG = "latest"
