from fastapi import APIRouter, Depends, status

from app.core.errors import NotFoundError
from app.dependencies import get_directory
from app.repositories.directory import DirectoryStore
from app.schemas import ProjectCreate, ProjectRead

router = APIRouter(prefix="/projects", tags=["projects"])


@router.post("/", response_model=ProjectRead, status_code=status.HTTP_201_CREATED)
async def create_project(
    data: ProjectCreate, directory: DirectoryStore = Depends(get_directory)
):
    return await directory.create_project(data)


@router.get("/", response_model=list[ProjectRead])
async def get_projects(directory: DirectoryStore = Depends(get_directory)):
    return await directory.list_projects()


@router.get("/{project_id}", response_model=ProjectRead)
async def get_project(
    project_id: str, directory: DirectoryStore = Depends(get_directory)
):
    project = await directory.get_project(project_id)
    if project is None:
        raise NotFoundError("Project", project_id)
    return project
