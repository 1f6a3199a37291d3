from termide.projects.store import Project, ProjectsDb

__all__ = ["Project", "ProjectsDb"]
