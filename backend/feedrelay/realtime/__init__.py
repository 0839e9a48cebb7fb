"""
Real-time module: connection gateway, presence, event relay and call signaling
over Socket.IO.
"""
