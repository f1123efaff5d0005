"""Core HR module — offices, teams, employees, holidays, delegations."""
