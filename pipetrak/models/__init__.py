"""
PipeTrak Milestones
SQLAlchemy extension instance shared by every model module.

Models:
    - pipetrak.models.pipetrak: Project, Drawing, MilestoneTemplate,
      Component, ComponentMilestone, MilestoneAuditLog
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
