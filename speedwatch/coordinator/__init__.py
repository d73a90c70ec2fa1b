"""speedwatch probe coordination subsystem.

Server-side components for the speed test cycle:
  - Registry: live device sessions keyed by device id
  - WebSocket: auth / speed_result protocol per connection
  - Scheduler: periodic test requests and timeout eviction
  - Forwarder: best-effort events to the downstream collector
  - Manager: wires the above together and owns their lifecycle
"""
