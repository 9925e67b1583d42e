"""
Blob Storage API Endpoints

FastAPI endpoints for the Azure Blob Storage container and block blob
operations served by the file backend.

Author: FileBlob Contributors
Date: 2025
"""

import base64
import binascii
import logging
import os
import xml.etree.ElementTree as ET
from typing import BinaryIO, Dict, Iterator, List, Optional

from fastapi import APIRouter, Header, Query, Request, Response, status
from fastapi.responses import StreamingResponse
from starlette.background import BackgroundTask
from starlette.concurrency import run_in_threadpool

from fileblob.gateway.error_formatter import STORAGE_API_VERSION

from .backend import BlockBlobStore
from .error_handlers import BlobApiError
from .models import BlobProperties, BlockListType, ByteRange

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 64 * 1024

_BLOCK_LIST_TAGS = {t.value for t in BlockListType}


def _standard_headers() -> Dict[str, str]:
    return {
        'x-ms-version': STORAGE_API_VERSION,
    }


def _require_container_restype(restype: Optional[str]) -> None:
    if (restype or "").lower() != "container":
        raise BlobApiError(
            "InvalidQueryParameterValue",
            "Value for one of the query parameters specified in the request URI is invalid.",
            additional_info={"QueryParameterName": "restype"},
        )


def _decode_block_id(encoded: str) -> str:
    """Decode a base64 block id to text."""
    try:
        return base64.b64decode(encoded, validate=True).decode("utf-8")
    except (binascii.Error, ValueError):
        raise BlobApiError(
            "InvalidQueryParameterValue",
            "The specified block id is not a valid base64 string.",
            additional_info={"QueryParameterName": "blockid"},
        )


def _parse_block_list_xml(xml_data: bytes) -> List[str]:
    """
    Parse block list XML from a Put Block List request.

    Args:
        xml_data: XML request body

    Returns:
        Decoded block ids in commit order
    """
    try:
        root = ET.fromstring(xml_data)
    except ET.ParseError:
        raise BlobApiError("InvalidXmlDocument", "XML specified is not syntactically valid.")

    if root.tag != "BlockList":
        raise BlobApiError("InvalidXmlDocument", "Expected a BlockList document.")

    block_ids = []
    for element in root:
        if element.tag not in _BLOCK_LIST_TAGS:
            continue
        encoded = (element.text or "").strip()
        try:
            block_ids.append(base64.b64decode(encoded, validate=True).decode("utf-8"))
        except (binascii.Error, ValueError):
            raise BlobApiError("InvalidBlockList", "The specified block list contains an invalid block id.")

    return block_ids


def _iter_file(stream: BinaryIO, start: int, length: int) -> Iterator[bytes]:
    stream.seek(start)
    remaining = length
    while remaining > 0:
        chunk = stream.read(min(READ_CHUNK_SIZE, remaining))
        if not chunk:
            break
        remaining -= len(chunk)
        yield chunk


def _build_list_xml(container_path: str, names: List[str]) -> bytes:
    root = ET.Element("EnumerationResults")
    root.set("ContainerName", container_path)

    blobs_element = ET.SubElement(root, "Blobs")
    for name in names:
        blob_element = ET.SubElement(blobs_element, "Blob")
        ET.SubElement(blob_element, "Name").text = name

    ET.SubElement(root, "NextMarker")

    return ET.tostring(root, encoding='utf-8', xml_declaration=True)


def create_router(store: BlockBlobStore) -> APIRouter:
    """
    Create FastAPI router for the blob endpoints.

    Args:
        store: Blob store the endpoints operate on

    Returns:
        Configured APIRouter
    """
    router = APIRouter(tags=["blob-storage"])

    # ============================================================================
    # Container Operations
    # ============================================================================

    @router.put(
        "/{account_name}/{container_name}",
        status_code=status.HTTP_201_CREATED,
        summary="Create Container",
    )
    async def create_container(
        account_name: str,
        container_name: str,
        restype: Optional[str] = Query(None),
    ) -> Response:
        """
        Create a container. Creating an existing container succeeds.

        Azure REST API: PUT https://{account}.blob.core.windows.net/{container}?restype=container
        """
        _require_container_restype(restype)

        logger.info(f"Create container {account_name}/{container_name}")
        store.ensure_container(account_name, container_name)

        return Response(status_code=status.HTTP_201_CREATED, headers=_standard_headers())

    @router.delete(
        "/{account_name}/{container_name}",
        status_code=status.HTTP_202_ACCEPTED,
        summary="Delete Container",
    )
    async def delete_container(
        account_name: str,
        container_name: str,
        restype: Optional[str] = Query(None),
    ) -> Response:
        """
        Delete a container with all of its blobs. Deleting an absent
        container succeeds.

        Azure REST API: DELETE https://{account}.blob.core.windows.net/{container}?restype=container
        """
        _require_container_restype(restype)

        logger.info(f"Delete container {account_name}/{container_name}")
        await run_in_threadpool(store.delete_container, account_name, container_name)

        return Response(status_code=status.HTTP_202_ACCEPTED, headers=_standard_headers())

    @router.get(
        "/{account_name}/{container_name}",
        status_code=status.HTTP_200_OK,
        summary="List Blobs",
    )
    async def list_blobs(
        account_name: str,
        container_name: str,
        restype: Optional[str] = Query(None),
        comp: Optional[str] = Query(None),
    ) -> Response:
        """
        List all committed blobs of a container in a single page.

        Azure REST API: GET https://{account}.blob.core.windows.net/{container}?restype=container&comp=list
        """
        _require_container_restype(restype)
        if (comp or "").lower() != "list":
            raise BlobApiError(
                "InvalidQueryParameterValue",
                "Value for one of the query parameters specified in the request URI is invalid.",
                additional_info={"QueryParameterName": "comp"},
            )

        if not store.container_exists(account_name, container_name):
            raise BlobApiError("ContainerNotFound", "The specified container does not exist.")

        names = await run_in_threadpool(sorted, store.list_blobs(account_name, container_name))

        return Response(
            content=_build_list_xml(f"{account_name}/{container_name}", names),
            media_type="application/xml",
            headers=_standard_headers(),
        )

    # ============================================================================
    # Blob Operations
    # ============================================================================

    @router.put(
        "/{account_name}/{container_name}/{blob_name:path}",
        status_code=status.HTTP_201_CREATED,
        summary="Put Blob, Put Block or Put Block List",
    )
    async def put_blob(
        account_name: str,
        container_name: str,
        blob_name: str,
        request: Request,
        comp: Optional[str] = Query(None),
        blockid: Optional[str] = Query(None),
    ) -> Response:
        """
        Upload a blob, stage a block, or commit a block list.

        Azure REST API:
        - PUT .../{container}/{blob}                            (single-shot upload)
        - PUT .../{container}/{blob}?comp=block&blockid={id}    (stage block)
        - PUT .../{container}/{blob}?comp=blocklist             (commit block list)

        Returns:
            201 Created
        """
        operation = (comp or "").lower()

        if operation == "block":
            if not blockid:
                raise BlobApiError(
                    "MissingRequiredQueryParameter",
                    "A query parameter that's mandatory for this request is not specified.",
                    additional_info={"QueryParameterName": "blockid"},
                )
            block_id = _decode_block_id(blockid)

            size = await store.stage_block(
                account_name, container_name, blob_name, block_id, request.stream()
            )
            logger.info(f"PUT block: {account_name}/{container_name}/{blob_name}, size={size}")

            return Response(status_code=status.HTTP_201_CREATED, headers=_standard_headers())

        if operation == "blocklist":
            block_ids = _parse_block_list_xml(await request.body())
            logger.info(
                f"PUT blocklist: {account_name}/{container_name}/{blob_name}, count={len(block_ids)}"
            )
            properties = await store.commit_blocks(
                account_name, container_name, blob_name, block_ids
            )
        elif operation:
            raise BlobApiError(
                "InvalidQueryParameterValue",
                "Value for one of the query parameters specified in the request URI is invalid.",
                additional_info={"QueryParameterName": "comp"},
            )
        else:
            logger.info(f"PUT blob (single-shot): {account_name}/{container_name}/{blob_name}")
            properties = await store.put_blob(
                account_name, container_name, blob_name, request.stream()
            )

        headers = _standard_headers()
        headers['ETag'] = f'"{properties.etag}"'
        headers['Last-Modified'] = properties.to_headers()['Last-Modified']
        headers['x-ms-request-server-encrypted'] = 'false'
        return Response(status_code=status.HTTP_201_CREATED, headers=headers)

    @router.get(
        "/{account_name}/{container_name}/{blob_name:path}",
        status_code=status.HTTP_200_OK,
        summary="Get Blob",
    )
    async def get_blob(
        account_name: str,
        container_name: str,
        blob_name: str,
        range_header: Optional[str] = Header(None, alias="range"),
        x_ms_range: Optional[str] = Header(None, alias="x-ms-range"),
    ) -> Response:
        """
        Download blob content, whole or a single byte range.

        Azure REST API: GET https://{account}.blob.core.windows.net/{container}/{blob}

        Returns:
            200 OK, or 206 Partial Content for a range request

        Raises:
            404 Not Found: Blob not found
            416 Range Not Satisfiable: Range outside the blob
        """
        stream = store.get_blob(account_name, container_name, blob_name)
        if stream is None:
            raise BlobApiError("BlobNotFound", "The specified blob does not exist.")

        try:
            stat = os.fstat(stream.fileno())
            properties = BlobProperties.from_stat(blob_name, stat.st_size, stat.st_mtime_ns)
        except BaseException:
            stream.close()
            raise

        try:
            byte_range = ByteRange.parse(x_ms_range or range_header, properties.content_length)
        except ValueError:
            stream.close()
            raise BlobApiError(
                "InvalidRange",
                "The range specified is invalid for the current size of the resource.",
                additional_info={"ContentRange": f"bytes */{properties.content_length}"},
            )

        headers = properties.to_headers()
        headers.update(_standard_headers())
        headers['Accept-Ranges'] = 'bytes'

        if byte_range is None:
            start, length, status_code = 0, properties.content_length, status.HTTP_200_OK
        else:
            start, length, status_code = byte_range.start, byte_range.length, status.HTTP_206_PARTIAL_CONTENT
            headers['Content-Range'] = byte_range.content_range(properties.content_length)
            headers['Content-Length'] = str(length)

        return StreamingResponse(
            _iter_file(stream, start, length),
            status_code=status_code,
            headers=headers,
            media_type="application/octet-stream",
            background=BackgroundTask(stream.close),
        )

    @router.delete(
        "/{account_name}/{container_name}/{blob_name:path}",
        status_code=status.HTTP_202_ACCEPTED,
        summary="Delete Blob",
    )
    async def delete_blob(
        account_name: str,
        container_name: str,
        blob_name: str,
    ) -> Response:
        """
        Delete a blob and any blocks staged for it.

        Azure REST API: DELETE https://{account}.blob.core.windows.net/{container}/{blob}

        Returns:
            202 Accepted

        Raises:
            404 Not Found: Blob not found
        """
        existed = await store.delete_blob(account_name, container_name, blob_name)
        if not existed:
            raise BlobApiError("BlobNotFound", "The specified blob does not exist.")

        return Response(status_code=status.HTTP_202_ACCEPTED, headers=_standard_headers())

    return router
