"""
Projects and tasks, scoped to an organization.

- Server-rendered team pages under /team/<slug>/projects
- JSON API under /api/projects
"""
