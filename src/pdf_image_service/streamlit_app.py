import os
import re
from dataclasses import dataclass
from typing import Sequence

import requests
import streamlit as st

API_BASE = os.getenv("PDF_IMAGE_SERVICE_API_BASE", os.getenv("API_BASE", "http://localhost:8080")).rstrip("/")
API_KEY = os.getenv("PDF_IMAGE_SERVICE_API_KEY", "")
REQUEST_TIMEOUT = float(os.getenv("PDF_IMAGE_SERVICE_UI_TIMEOUT", "300"))


@dataclass
class ConversionOutcome:
    data: bytes | None = None
    filename: str = ""
    mime: str = ""
    error: str | None = None


def _headers() -> dict[str, str]:
    return {"X-Internal-Key": API_KEY} if API_KEY else {}


def _filename_from(resp: requests.Response, default: str) -> str:
    disposition = resp.headers.get("content-disposition", "")
    match = re.search(r'filename="([^"]+)"', disposition)
    return match.group(1) if match else default


def _outcome(resp: requests.Response, default_name: str) -> ConversionOutcome:
    if resp.status_code != 200:
        try:
            body = resp.json()
            message = f"{body.get('error', 'error')}: {body.get('details', '')}"
        except ValueError:
            message = resp.text
        return ConversionOutcome(error=f"Conversion failed: {resp.status_code} {message}")
    return ConversionOutcome(
        data=resp.content,
        filename=_filename_from(resp, default_name),
        mime=resp.headers.get("content-type", "application/octet-stream"),
    )


def convert_images(files: Sequence[tuple[str, bytes, str]]) -> ConversionOutcome:
    """Post (name, data, mime) images in order and return the resulting PDF."""
    parts = [("images", (name, data, mime or "application/octet-stream")) for name, data, mime in files]
    try:
        resp = requests.post(
            f"{API_BASE}/convert/images-to-document",
            files=parts,
            headers=_headers(),
            timeout=REQUEST_TIMEOUT,
        )
    except requests.RequestException as e:
        return ConversionOutcome(error=f"Failed to connect to API: {e}")
    return _outcome(resp, "images.pdf")


def convert_document(file: tuple[str, bytes], image_format: str, scale: float) -> ConversionOutcome:
    name, data = file
    try:
        resp = requests.post(
            f"{API_BASE}/convert/document-to-images",
            files={"document": (name, data, "application/pdf")},
            data={"format": image_format, "scale": str(scale)},
            headers=_headers(),
            timeout=REQUEST_TIMEOUT,
        )
    except requests.RequestException as e:
        return ConversionOutcome(error=f"Failed to connect to API: {e}")
    return _outcome(resp, "pages.zip")


def _show(outcome: ConversionOutcome, label: str) -> None:
    if outcome.error:
        st.error(outcome.error)
        return
    st.success("Conversion complete!")
    st.download_button(label=label, data=outcome.data or b"", file_name=outcome.filename, mime=outcome.mime)
    if outcome.mime.startswith("image/"):
        st.image(outcome.data)


def main() -> None:
    st.set_page_config(page_title="PDF Image Service", page_icon="📄", layout="centered")
    st.title("📄 PDF Image Service")
    st.caption(f"API base: {API_BASE}")

    to_pdf, to_images = st.tabs(["Images → PDF", "PDF → Images"])

    with to_pdf:
        uploads = st.file_uploader(
            "Upload images (PNG or JPEG); pages follow the upload order",
            type=["png", "jpg", "jpeg"],
            accept_multiple_files=True,
        )
        if uploads and st.button("Create PDF", type="primary"):
            with st.spinner("Converting..."):
                outcome = convert_images([(u.name, u.getvalue(), u.type) for u in uploads])
            _show(outcome, "Download PDF")

    with to_images:
        uploaded = st.file_uploader("Upload a PDF", type=["pdf"])
        image_format = st.selectbox("Format", ["png", "jpeg", "webp"])
        scale = st.slider("Scale (x 72 DPI)", min_value=0.5, max_value=6.0, value=2.0, step=0.5)
        if uploaded and st.button("Rasterize", type="primary"):
            with st.spinner("Rendering pages..."):
                outcome = convert_document((uploaded.name, uploaded.getvalue()), image_format, scale)
            _show(outcome, "Download images")


if __name__ == "__main__":
    main()
