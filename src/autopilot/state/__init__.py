from autopilot.state.store import AutopilotStore, StoreError

__all__ = ["AutopilotStore", "StoreError"]
