# src/gemini_relay/catalog_sync.py

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import httpx
import yaml

from .error_handler import mask_credential
from .model_catalog import ModelConfig
from .settings import DEFAULT_BASE_URL

lib_logger = logging.getLogger("gemini_relay")


async def fetch_gemini_models(
    client: httpx.AsyncClient, api_key: str, base_url: str = DEFAULT_BASE_URL
) -> Optional[List[str]]:
    """
    Fetches the ids of the `gemini-*` models available to `api_key`.

    Returns None (after logging) if the listing could not be retrieved.
    """
    try:
        response = await client.get(
            f"{base_url.rstrip('/')}/models",
            headers={"x-goog-api-key": api_key},
            params={"pageSize": 1000},
        )
        response.raise_for_status()
        payload = response.json()
    except (httpx.HTTPError, ValueError) as e:
        lib_logger.error(
            f"Failed to fetch Gemini models with key {mask_credential(api_key)}: {e}"
        )
        return None

    model_ids: List[str] = []
    for model in payload.get("models", []) or []:
        name = model.get("name", "") if isinstance(model, dict) else ""
        if not name.startswith("models/"):
            lib_logger.warning(f"Skipping malformed model id from API: '{name}'")
            continue
        model_id = name[len("models/"):]
        if not model_id.startswith("gemini-"):
            lib_logger.debug(f"Skipping non-Gemini model '{model_id}'")
            continue
        model_ids.append(model_id)
    return model_ids


def merge_models(
    existing: Dict[str, Any], model_ids: List[str]
) -> Dict[str, Dict[str, Any]]:
    """
    Builds the new `models` mapping: every listed id, keeping its existing
    entry if it has one. New ids get zero rate figures and themselves as
    fallback, which the catalog reads as "no fallback".
    """
    merged: Dict[str, Dict[str, Any]] = {}
    for model_id in model_ids:
        if isinstance(existing.get(model_id), dict):
            merged[model_id] = existing[model_id]
        else:
            merged[model_id] = ModelConfig(fallback_model=model_id).to_dict()
            lib_logger.info(f"Adding new model '{model_id}' with default config.")
    return merged


async def sync_models_file(
    client: httpx.AsyncClient,
    api_key: str,
    path: Union[str, Path],
    base_url: str = DEFAULT_BASE_URL,
) -> bool:
    """
    Refreshes the YAML model catalog at `path` from the upstream model list.

    Any failure is logged and leaves the file untouched.

    Returns:
        True if the file was rewritten
    """
    path = Path(path)
    model_ids = await fetch_gemini_models(client, api_key, base_url)
    if model_ids is None:
        lib_logger.warning("Skipping model catalog update.")
        return False

    try:
        data: Dict[str, Any] = {}
        if path.exists():
            with open(path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        data["models"] = merge_models(data.get("models") or {}, model_ids)

        tmp_path = path.with_suffix(path.suffix + ".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            yaml.safe_dump(data, f, sort_keys=False, allow_unicode=True)
        tmp_path.replace(path)
    except (OSError, yaml.YAMLError) as e:
        lib_logger.error(f"Failed to update model catalog {path}: {e}")
        return False

    lib_logger.info(f"Model catalog {path} updated with {len(model_ids)} model(s).")
    return True
