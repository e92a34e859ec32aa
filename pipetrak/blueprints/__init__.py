"""
PipeTrak Milestones
Blueprint registry.

    health_bp     /api/v1/health      readiness / liveness probes
    milestone_bp  /api/v1/pipetrak    components, milestone updates, bulk updates
"""
