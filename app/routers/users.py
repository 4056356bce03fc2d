from fastapi import APIRouter, Depends, status

from app.core.errors import NotFoundError
from app.dependencies import get_directory
from app.repositories.directory import DirectoryStore
from app.schemas import TagCreate, TagRead, UserCreate, UserRead

router = APIRouter(tags=["users"])


@router.post("/users/", response_model=UserRead, status_code=status.HTTP_201_CREATED)
async def create_user(data: UserCreate, directory: DirectoryStore = Depends(get_directory)):
    return await directory.create_user(data)


@router.get("/users/", response_model=list[UserRead])
async def get_users(directory: DirectoryStore = Depends(get_directory)):
    return await directory.list_users()


@router.get("/users/{user_id}", response_model=UserRead)
async def get_user(user_id: str, directory: DirectoryStore = Depends(get_directory)):
    user = await directory.get_user(user_id)
    if user is None:
        raise NotFoundError("User", user_id)
    return user


@router.post(
    "/tags/", response_model=TagRead, status_code=status.HTTP_201_CREATED, tags=["tags"]
)
async def create_tag(data: TagCreate, directory: DirectoryStore = Depends(get_directory)):
    return await directory.create_tag(data)


@router.get("/tags/", response_model=list[TagRead], tags=["tags"])
async def get_tags(directory: DirectoryStore = Depends(get_directory)):
    return await directory.list_tags()
