"""Likable: dev-service orchestrator for AI-assisted web app development.

``likable.orchestrator`` runs a session.  ``likable.agents`` also exposes
``detect_installed_agents``, ``generate_project_names`` and
``generate_project_specification`` for the project wizard that calls this
package.
"""

__version__ = "0.1.0"
