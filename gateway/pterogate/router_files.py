"""File routes - /servers/{server_id}/files/* (client API keys only).

Endpoints:
  GET  /servers/{server_id}/files           - List a directory
  GET  /servers/{server_id}/files/contents  - Read a file as text
  PUT  /servers/{server_id}/files/contents  - Write a file
  POST /servers/{server_id}/files/folder    - Create a folder
  PUT  /servers/{server_id}/files/rename    - Rename a file or folder
  POST /servers/{server_id}/files/delete    - Delete files or folders
  GET  /servers/{server_id}/files/download  - Signed download URL
  POST /servers/{server_id}/files/upload    - Upload a file (multipart)
"""

from fastapi import APIRouter, File, Form, Query, Response, UploadFile
from fastapi.responses import PlainTextResponse

from .models import CreateFolderRequest, DeletePathsRequest, FileInfo, FileWriteRequest, RenamePathRequest

router = APIRouter(prefix="/servers/{server_id}/files", tags=["files"])


def _get_session():
    from .main import get_session
    return get_session()


@router.get("", response_model=list[FileInfo])
async def list_files(server_id: str, directory: str = Query("/")):
    return await _get_session().list_files(directory, server_id)


@router.get("/contents", response_class=PlainTextResponse)
async def read_file(server_id: str, file: str = Query(..., min_length=1)):
    return PlainTextResponse(await _get_session().get_file_content(file, server_id))


@router.put("/contents", status_code=204)
async def write_file(server_id: str, body: FileWriteRequest):
    await _get_session().save_file_content(body.path, body.content, server_id)
    return Response(status_code=204)


@router.post("/folder", status_code=204)
async def create_folder(server_id: str, body: CreateFolderRequest):
    await _get_session().create_folder(body.path, server_id)
    return Response(status_code=204)


@router.put("/rename", status_code=204)
async def rename(server_id: str, body: RenamePathRequest):
    await _get_session().rename_path(body.old_path, body.new_path, server_id)
    return Response(status_code=204)


@router.post("/delete", status_code=204)
async def delete(server_id: str, body: DeletePathsRequest):
    await _get_session().delete_paths(body.paths, server_id)
    return Response(status_code=204)


@router.get("/download")
async def download_url(server_id: str, file: str = Query(..., min_length=1)):
    return {"url": await _get_session().get_download_url(file, server_id)}


@router.post("/upload", status_code=204)
async def upload(
    server_id: str,
    file: UploadFile = File(...),
    directory: str = Form("/"),
):
    data = await file.read()
    filename = file.filename or "upload.bin"
    await _get_session().upload(f"{directory.rstrip('/')}/{filename}", data, server_id)
    return Response(status_code=204)
