from __future__ import annotations

from fastapi import FastAPI, UploadFile, File, HTTPException, Form
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response
import io
import logging
import os
import tempfile
import zipfile
from pathlib import Path

from stemsplit.separation.audio import FFMPEG_CODECS, SOUNDFILE_FORMATS
from stemsplit.separation.models import SEPARATION_MODELS, get_model
from stemsplit.separation.pipeline import StemSeparationPipeline

logger = logging.getLogger(__name__)

app = FastAPI()

# Helper parsers
def parse_bool_env(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "y", "on"}


# Allow CORS for frontend
allowed_origins_env = os.getenv("STEMSPLIT_ALLOWED_ORIGINS")
allowed_origins = (
    [origin.strip() for origin in allowed_origins_env.split(",") if origin.strip()]
    if allowed_origins_env
    else ["http://localhost:5173"]
)
allow_credentials = parse_bool_env(os.getenv("STEMSPLIT_ALLOW_CREDENTIALS"), False)

# Browsers block wildcard origins when allow_credentials=True, so disable credentials in that case
if "*" in allowed_origins and allow_credentials:
    allow_credentials = False

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=allow_credentials,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Mock mode swaps the neural backends for the deterministic filter bank
USE_MOCK = parse_bool_env(os.getenv("STEMSPLIT_USE_MOCK"), False)


@app.get("/api/models")
def list_models():
    return [
        {"key": m.key, "name": m.name, "stems": list(m.stems)}
        for m in SEPARATION_MODELS.values()
    ]


@app.post("/api/separate")
async def separate(
    file: UploadFile = File(...),
    model: str = Form("2stems"),
    output_format: str = Form("wav"),
):
    """
    Separate an uploaded recording and return the stems as a zip archive.

    - model: separation model key (see /api/models).
    - output_format: container of the returned stems (wav, flac, ogg, mp3, aac, m4a).
    """
    try:
        get_model(model)
    except KeyError as e:
        raise HTTPException(status_code=400, detail=str(e.args[0]))
    if output_format.lower() not in {**SOUNDFILE_FORMATS, **FFMPEG_CODECS}:
        raise HTTPException(status_code=400, detail=f"Unsupported output format '{output_format}'")

    try:
        with tempfile.TemporaryDirectory(prefix="stemsplit_api_") as workdir:
            name = Path(file.filename or "upload").name
            upload_path = os.path.join(workdir, name)
            content = await file.read()
            with open(upload_path, "wb") as tmp:
                tmp.write(content)

            pipeline = StemSeparationPipeline(
                model=model,
                backend="filterbank" if USE_MOCK else None,
                overrides=[("io.output_format", output_format.lower())],
            )
            artifacts = pipeline.run(upload_path, os.path.join(workdir, "out"))
            if not artifacts.complete:
                raise HTTPException(status_code=502, detail=artifacts.error or "separation incomplete")

            buf = io.BytesIO()
            with zipfile.ZipFile(buf, "w", zipfile.ZIP_DEFLATED) as zf:
                for stem_path in artifacts.stem_paths.values():
                    zf.write(stem_path, arcname=os.path.basename(stem_path))
                zf.write(artifacts.meta_path, arcname="meta.json")

        archive_name = f"{Path(name).stem}_stems.zip"
        return Response(
            content=buf.getvalue(),
            media_type="application/zip",
            headers={"Content-Disposition": f'attachment; filename="{archive_name}"'},
        )

    except HTTPException:
        raise
    except Exception as e:
        logger.exception("API Error")
        raise HTTPException(status_code=500, detail=str(e))


@app.get("/health")
def health_check():
    return {"status": "ok", "mock_mode": USE_MOCK}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
