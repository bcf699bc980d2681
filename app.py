import os
import importlib
import io
import json
import logging
import socket
import asyncio
from contextlib import asynccontextmanager
from typing import List, Dict, Any, Optional

import uvicorn
from fastapi import FastAPI, HTTPException, Query, Body
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field
from zeroconf import ServiceInfo, Zeroconf

from extensions.cloudflare_bypass.errors import (
    DocumentOpenError,
    FetchError,
    PageIndexOutOfRange,
    SourceError,
    StorageError,
)

logger = logging.getLogger("extension_server")

BASE_DIR = os.path.dirname(os.path.abspath(__file__))
DATA_DIR = os.environ.get("EXTENSION_SERVER_DATA_DIR", os.path.join(BASE_DIR, "data"))
EXTENSIONS_DIR = os.path.join(BASE_DIR, "extensions")
HOST = "0.0.0.0"
PORT = 7275
ADVERTISE = os.environ.get("EXTENSION_SERVER_ADVERTISE", "1").lower() not in ("0", "false", "no")

# --- Zeroconf Service Registration ---
zeroconf: Optional[Zeroconf] = None
service_info: Optional[ServiceInfo] = None


def get_local_ip():
    """Finds the local IP address of the machine."""
    s = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        s.connect(('10.255.255.255', 1))
        IP = s.getsockname()[0]
    except OSError:
        IP = '127.0.0.1'
    finally:
        s.close()
    return IP


def register_service():
    """Registers this API as a service on the local network."""
    global zeroconf, service_info
    try:
        host_ip = get_local_ip()
        host_name = socket.gethostname()
        zeroconf = Zeroconf()
        service_info = ServiceInfo(
            "_http._tcp.local.",
            f"Extension Server @ {host_name}._http._tcp.local.",
            addresses=[socket.inet_aton(host_ip)],
            port=PORT,
            properties={'app': 'cloudflare-extension-api'},
            server=f"{host_name}.local.",
        )
        logger.info("Registering service '%s' on %s:%s", service_info.name, host_ip, PORT)
        zeroconf.register_service(service_info)
        logger.info("Service registration completed")
    except Exception as e:
        logger.warning("Failed to register Zeroconf service: %s", e)


def unregister_service():
    """Unregisters the service from the network on shutdown."""
    if zeroconf is None:
        return
    if service_info:
        logger.info("Unregistering service '%s'", service_info.name)
        zeroconf.unregister_service(service_info)
    zeroconf.close()


# --- Extension Loading ---
loaded_extensions: Dict[str, Dict[str, Any]] = {}


def load_extensions():
    if not os.path.exists(EXTENSIONS_DIR):
        return

    for ext_name in sorted(os.listdir(EXTENSIONS_DIR)):
        ext_path = os.path.join(EXTENSIONS_DIR, ext_name)
        if not os.path.isdir(ext_path):
            continue

        package_json_path = os.path.join(ext_path, "package.json")
        if not os.path.exists(package_json_path):
            continue

        try:
            with open(package_json_path, 'r', encoding='utf-8') as f:
                ext_meta = json.load(f)

            main_file = ext_meta.get("main", "extension.py")
            module_name = f"extensions.{ext_name}.{main_file.rsplit('.', 1)[0]}"
            ext_module = importlib.import_module(module_name)
            ext_module.EXT_PATH = os.path.abspath(ext_path)

            setup = getattr(ext_module, "setup", None)
            if setup:
                setup(DATA_DIR)

            loaded_extensions[ext_name] = {
                "info": ext_meta,
                "instance": ext_module,
            }
            logger.info("Successfully loaded extension: %s", ext_meta.get('name', ext_name))

        except Exception:
            logger.exception("Failed to load extension %s", ext_name)


async def unload_extensions():
    for ext_name, ext_data in list(loaded_extensions.items()):
        teardown = getattr(ext_data["instance"], "teardown", None)
        if teardown:
            try:
                await teardown()
            except Exception:
                logger.exception("Extension '%s' failed to shut down cleanly", ext_name)
    loaded_extensions.clear()


# --- FastAPI App Lifespan Manager ---
@asynccontextmanager
async def lifespan(app: FastAPI):
    # --- Startup ---
    os.makedirs(DATA_DIR, exist_ok=True)
    load_extensions()

    if ADVERTISE:
        loop = asyncio.get_running_loop()
        loop.run_in_executor(None, register_service)

    yield

    # --- Shutdown ---
    logger.info("Shutting down Extension Server...")
    await unload_extensions()
    if ADVERTISE:
        unregister_service()
    logger.info("Extension Server shutdown complete.")


# --- FastAPI App Initialization ---
app = FastAPI(
    title="Cloudflare Extensions API",
    description="Serves chapter pages from sources behind Cloudflare, including pages rendered from PDFs.",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


class AddOnSettings(BaseModel):
    extension_id: str
    values: Dict[str, Optional[str]] = Field(default_factory=dict)


def get_extension(ext_name: str) -> Dict[str, Any]:
    ext_data = loaded_extensions.get(ext_name)
    if not ext_data:
        raise HTTPException(status_code=404, detail=f"Extension '{ext_name}' not found.")
    return ext_data


def get_extension_func(ext_name: str, func_name: str):
    func = getattr(get_extension(ext_name)["instance"], func_name, None)
    if not func:
        raise HTTPException(status_code=404, detail=f"Extension '{ext_name}' does not support '{func_name}'.")
    return func


def source_error_to_http(ext_name: str, e: SourceError) -> HTTPException:
    if isinstance(e, FetchError):
        status_code = 502
    elif isinstance(e, PageIndexOutOfRange):
        status_code = 404
    elif isinstance(e, DocumentOpenError):
        status_code = 422
    else:
        status_code = 500
    logger.warning("Extension %s failed: %s", ext_name, e)
    return HTTPException(status_code=status_code, detail=str(e))


# --- Endpoints ---
@app.get("/settings/add-ons", response_model=List[Dict[str, Any]])
async def get_add_on_settings():
    """Returns settings metadata and current values from all loaded extensions."""
    settings = []
    for ext_name, ext_data in loaded_extensions.items():
        if "settings" in ext_data["info"]:
            get_values = getattr(ext_data["instance"], "get_settings", None)
            settings.append({
                "extension_id": ext_name,
                **ext_data["info"]["settings"],
                "values": get_values() if get_values else {},
            })
    return settings


@app.post("/settings/add-on")
async def set_add_on_settings(settings_data: AddOnSettings = Body(...)):
    """Saves settings for a specific extension."""
    update = get_extension_func(settings_data.extension_id, "update_settings")
    try:
        values = update(settings_data.values)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except StorageError as e:
        raise source_error_to_http(settings_data.extension_id, e)

    logger.info("Updated settings for %s: %s", settings_data.extension_id, ", ".join(sorted(settings_data.values)))
    return {"status": "success", "extension_id": settings_data.extension_id, "values": values}


@app.get("/extensions", response_model=List[str])
async def get_extensions_list():
    """Returns a list of all loaded extension IDs."""
    return list(loaded_extensions.keys())


@app.get("/ext/{ext_name}/info", response_model=Dict[str, Any])
async def get_extension_info(ext_name: str):
    """Returns metadata for a specific loaded extension."""
    return get_extension(ext_name)["info"]


@app.get("/ext/{ext_name}/popular")
async def get_popular(ext_name: str, page: int = Query(1, ge=1)):
    """Lists the source's popular series."""
    popular = get_extension_func(ext_name, "get_popular")
    try:
        return {"items": await popular(page), "page": page}
    except SourceError as e:
        raise source_error_to_http(ext_name, e)


@app.get("/ext/{ext_name}/pages")
async def get_chapter_pages(ext_name: str, chapter: str = Query(..., description="Chapter URL or path")):
    """
    Resolves a chapter into its page list. PDF chapters yield one page per
    PDF page, each with a `pdf:` image URL to pass back to the image endpoint.
    """
    chapter_pages = get_extension_func(ext_name, "get_chapter_pages")
    try:
        pages = await chapter_pages(chapter)
    except SourceError as e:
        raise source_error_to_http(ext_name, e)
    logger.info("Got %d pages from extension %s", len(pages), ext_name)
    return pages


@app.get("/ext/{ext_name}/image")
async def get_page_image(ext_name: str, url: str = Query(..., description="Image URL of a page")):
    """Returns the image for one page, rendering it first if it comes from a PDF."""
    fetch_image = get_extension_func(ext_name, "fetch_image")
    try:
        image = await fetch_image(url)
    except SourceError as e:
        raise source_error_to_http(ext_name, e)
    return StreamingResponse(io.BytesIO(image.content), media_type=image.media_type)


@app.get("/identify", include_in_schema=False)
def identify_server():
    return {"app": "Cloudflare Extension API", "version": "1.0"}


@app.get("/status")
async def get_status():
    return {"status": "online"}


# --- To make the server runnable directly ---
if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    uvicorn.run(app, host=HOST, port=PORT, log_level="info")
