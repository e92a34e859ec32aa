"""pipetrak.integrations - Milestone persistence gateways.

All calls from the client-side engine to the persistence layer go through a
gateway in this package, never via bare `requests` calls in services.

Current gateways:
  pipetrak_gateway.PipeTrakGateway    - milestone REST API over HTTP
  local_gateway.LocalMilestoneGateway - same contract, in-process
"""
