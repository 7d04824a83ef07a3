"""Client for the external MRI inference service.

The service is a black box reached over HTTP:

    POST {base_url}/preprocess/   multipart "file"        -> {"preview_image": ..., "file_handle": ...}
    POST {base_url}/predict/      form "file_handle"      -> {"predicted_class": "AD", "probability": 0.87, "features": {...}}
    POST {base_url}/gradcam/      form "file_handle"      -> PNG bytes, or {"heatmap_image": ...}

Older deployments answer /predict/ with "confidence" instead of
"probability"; both are accepted.
"""

import base64
from dataclasses import dataclass
from typing import Optional

import requests

from config import INFERENCE_TIMEOUT, INFERENCE_URL
from schemas import GradcamResult, InferenceResult, PreprocessResult


class InferenceAPIError(Exception):
    """Raised when the inference service fails or returns an unusable response."""
    pass


@dataclass
class Analysis:
    """Everything one analysis run produced for a single uploaded scan."""

    preprocess: PreprocessResult
    result: InferenceResult
    gradcam: Optional[GradcamResult] = None


class InferenceClient:
    def __init__(self, base_url: str = INFERENCE_URL, timeout: float = INFERENCE_TIMEOUT):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def _post(self, endpoint: str, **kwargs) -> requests.Response:
        url = f"{self.base_url}/{endpoint}/"
        try:
            response = requests.post(url, timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            raise InferenceAPIError(f"Request to {url} failed: {e}") from e
        if response.status_code != 200:
            raise InferenceAPIError(
                f"{endpoint} returned {response.status_code}: {response.text[:200]}"
            )
        return response

    def _json(self, response: requests.Response) -> dict:
        try:
            data = response.json()
        except ValueError as e:
            raise InferenceAPIError(f"Invalid JSON from inference service: {e}") from e
        if not isinstance(data, dict):
            raise InferenceAPIError("Inference service returned a non-object payload")
        return data

    def preprocess(self, file_name: str, file_bytes: bytes) -> PreprocessResult:
        response = self._post(
            "preprocess",
            files={"file": (file_name, file_bytes, "application/octet-stream")},
        )
        data = self._json(response)
        data.setdefault("file_handle", file_name)
        try:
            return PreprocessResult.model_validate(data)
        except ValueError as e:
            raise InferenceAPIError(f"Unexpected preprocess response: {e}") from e

    def predict(self, file_handle: str) -> InferenceResult:
        data = self._json(self._post("predict", data={"file_handle": file_handle}))
        if "probability" not in data and "confidence" in data:
            data["probability"] = data.pop("confidence")
        data["features"] = {str(k): str(v) for k, v in (data.get("features") or {}).items()}
        try:
            return InferenceResult.model_validate(data)
        except ValueError as e:
            raise InferenceAPIError(f"Unexpected predict response: {e}") from e

    def gradcam(self, file_handle: str) -> GradcamResult:
        response = self._post("gradcam", data={"file_handle": file_handle})
        content_type = response.headers.get("content-type", "")
        if content_type.startswith("image/"):
            encoded = base64.b64encode(response.content).decode("utf-8")
            return GradcamResult(heatmap_image=f"data:{content_type};base64,{encoded}")
        return GradcamResult.model_validate(self._json(response))

    def analyze(self, file_name: str, file_bytes: bytes) -> Analysis:
        """Run preprocess, predict and gradcam in order.

        The heatmap is optional: a gradcam failure leaves it empty instead of
        discarding a valid prediction.
        """
        prep = self.preprocess(file_name, file_bytes)
        result = self.predict(prep.file_handle)
        try:
            heatmap = self.gradcam(prep.file_handle)
        except InferenceAPIError as e:
            print(f"⚠️ Grad-CAM unavailable for {file_name}: {e}")
            heatmap = None
        return Analysis(preprocess=prep, result=result, gradcam=heatmap)
