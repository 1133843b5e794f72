"""
Storage handlers for backup artifacts.

Supports:
- S3Storage: S3-compatible object storage (AWS, MinIO, Ceph, ...)
- LocalStorage: per-element directories under the local backup root
"""

import os
import shutil
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

CHUNK_SIZE = 1024 * 1024


class StorageError(Exception):
    """Raised when storage operation fails."""
    pass


def _client_error_code(error: ClientError) -> str:
    return error.response.get('Error', {}).get('Code', 'Unknown')


class S3Storage:
    """
    Handler for S3-compatible object storage.

    Keys are passed in by the caller ({remote_folder}/{artifact_name}); this
    class only moves bytes.
    """

    # Files above this size are sent with a multipart upload
    MULTIPART_THRESHOLD = 100 * 1024 * 1024
    MULTIPART_CHUNK_SIZE = 10 * 1024 * 1024

    def __init__(
        self,
        access_key: str,
        secret_key: str,
        bucket_name: str,
        region: str = 'us-east-1',
        endpoint_url: Optional[str] = None,
        path_style: bool = False,
        timeout: Optional[float] = None
    ):
        """
        Initialize S3 storage handler.

        Args:
            access_key: Access key ID
            secret_key: Secret access key
            bucket_name: Bucket name
            region: Region (default: us-east-1)
            endpoint_url: Custom endpoint for S3-compatible services (None = AWS)
            path_style: Use path-style addressing instead of virtual-hosted style
            timeout: Connect/read timeout in seconds for each request
        """
        self.bucket_name = bucket_name
        self.region = region
        self.endpoint_url = endpoint_url or None

        config_kwargs = {
            's3': {'addressing_style': 'path' if path_style else 'virtual'},
        }
        if timeout:
            config_kwargs['connect_timeout'] = timeout
            config_kwargs['read_timeout'] = timeout

        try:
            self.s3_client = boto3.client(
                's3',
                endpoint_url=self.endpoint_url,
                aws_access_key_id=access_key,
                aws_secret_access_key=secret_key,
                region_name=region,
                config=BotoConfig(**config_kwargs)
            )
        except Exception as e:
            raise StorageError(f"Failed to initialize S3 client: {e}")

    def upload(self, local_path, key: str) -> str:
        """
        Upload a local file under key.

        Returns:
            The key

        Raises:
            StorageError: If upload fails
        """
        local_path = str(local_path)
        if not os.path.exists(local_path):
            raise StorageError(f"Local file not found: {local_path}")

        try:
            file_size = os.path.getsize(local_path)

            if file_size > self.MULTIPART_THRESHOLD:
                self._multipart_upload(local_path, key)
            else:
                self._simple_upload(local_path, key)

            return key

        except ClientError as e:
            raise StorageError(f"S3 upload failed ({_client_error_code(e)}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"S3 upload failed: {e}")
        except OSError as e:
            raise StorageError(f"Failed to read {local_path} for upload: {e}")

    def _simple_upload(self, local_path: str, key: str):
        with open(local_path, 'rb') as f:
            self.s3_client.put_object(Bucket=self.bucket_name, Key=key, Body=f)

    def _multipart_upload(self, local_path: str, key: str):
        response = self.s3_client.create_multipart_upload(Bucket=self.bucket_name, Key=key)
        upload_id = response['UploadId']
        parts = []

        try:
            with open(local_path, 'rb') as f:
                part_number = 1

                while True:
                    data = f.read(self.MULTIPART_CHUNK_SIZE)
                    if not data:
                        break

                    response = self.s3_client.upload_part(
                        Bucket=self.bucket_name,
                        Key=key,
                        PartNumber=part_number,
                        UploadId=upload_id,
                        Body=data
                    )
                    parts.append({'PartNumber': part_number, 'ETag': response['ETag']})
                    part_number += 1

            self.s3_client.complete_multipart_upload(
                Bucket=self.bucket_name,
                Key=key,
                UploadId=upload_id,
                MultipartUpload={'Parts': parts}
            )

        except Exception:
            try:
                self.s3_client.abort_multipart_upload(
                    Bucket=self.bucket_name,
                    Key=key,
                    UploadId=upload_id
                )
            except (ClientError, BotoCoreError):
                pass
            raise

    def download(self, key: str, local_path) -> Path:
        """
        Download an object to a local file (parent directories created).

        Raises:
            StorageError: If the object is missing or the download fails
        """
        local_path = Path(local_path)
        partial_path = local_path.with_name(f".{local_path.name}.partial")

        try:
            local_path.parent.mkdir(parents=True, exist_ok=True)
            response = self.s3_client.get_object(Bucket=self.bucket_name, Key=key)

            with open(partial_path, 'wb') as f:
                for chunk in response['Body'].iter_chunks(CHUNK_SIZE):
                    f.write(chunk)

            os.replace(partial_path, local_path)
            return local_path

        except ClientError as e:
            partial_path.unlink(missing_ok=True)
            code = _client_error_code(e)
            if code in ('NoSuchKey', '404'):
                raise StorageError(f"S3 object not found: {key}")
            raise StorageError(f"S3 download failed ({code}): {e}")
        except (BotoCoreError, OSError) as e:
            partial_path.unlink(missing_ok=True)
            raise StorageError(f"Failed to download {key}: {e}")

    def delete(self, key: str):
        """
        Delete an object.

        Raises:
            StorageError: If deletion fails
        """
        try:
            self.s3_client.delete_object(Bucket=self.bucket_name, Key=key)
        except ClientError as e:
            raise StorageError(f"S3 delete failed ({_client_error_code(e)}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"Failed to delete from S3: {e}")

    def list_objects(self, prefix: str) -> list:
        """
        List objects with given prefix.

        Returns:
            List of dicts with 'Key', 'LastModified', and 'Size' keys

        Raises:
            StorageError: If listing fails
        """
        try:
            objects = []
            paginator = self.s3_client.get_paginator('list_objects_v2')

            for page in paginator.paginate(Bucket=self.bucket_name, Prefix=prefix):
                for obj in page.get('Contents', []):
                    objects.append({
                        'Key': obj['Key'],
                        'LastModified': obj['LastModified'],
                        'Size': obj['Size']
                    })

            return objects

        except ClientError as e:
            raise StorageError(f"S3 list failed ({_client_error_code(e)}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"Failed to list S3 objects: {e}")

    def test_connection(self) -> bool:
        """
        Test connection and bucket access.

        Raises:
            StorageError: If connection test fails
        """
        try:
            self.s3_client.head_bucket(Bucket=self.bucket_name)
            return True
        except ClientError as e:
            error_code = _client_error_code(e)
            if error_code == '404':
                raise StorageError(f"Bucket does not exist: {self.bucket_name}")
            elif error_code == '403':
                raise StorageError(f"Access denied to bucket: {self.bucket_name}")
            else:
                raise StorageError(f"S3 connection test failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"Failed to connect to S3: {e}")


class LocalStorage:
    """
    Handler for artifacts in the local filesystem.

    Layout: {base_path}/{element_title}/{artifact_name}
    """

    def __init__(self, base_path):
        self.base_path = Path(base_path)

        try:
            self.base_path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Failed to create local storage directory: {e}")

    def element_dir(self, title: str) -> Path:
        """Return the element's directory, creating it if absent."""
        path = self.base_path / title
        try:
            path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Failed to create backup dir {path}: {e}")
        return path

    def store(self, staged_path, title: str, name: str) -> Path:
        """
        Move a staged file into the element's directory as `name`.

        Returns:
            Full path of the stored file

        Raises:
            StorageError: If the move fails
        """
        staged_path = Path(staged_path)
        if not staged_path.exists():
            raise StorageError(f"Staged file not found: {staged_path}")

        dest_path = self.element_dir(title) / name

        try:
            if staged_path.parent == dest_path.parent:
                os.replace(staged_path, dest_path)
            else:
                shutil.move(str(staged_path), str(dest_path))
            return dest_path
        except PermissionError as e:
            raise StorageError(f"Permission denied writing to {dest_path}: {e}")
        except OSError as e:
            raise StorageError(f"Failed to store locally: {e}")

    def delete(self, path):
        """
        Delete a file.

        Raises:
            StorageError: If deletion fails
        """
        full_path = Path(path)
        if not full_path.is_absolute():
            full_path = self.base_path / full_path

        try:
            full_path.unlink(missing_ok=True)
        except PermissionError as e:
            raise StorageError(f"Permission denied deleting {full_path}: {e}")
        except OSError as e:
            raise StorageError(f"Failed to delete local file: {e}")

    def list_files(self, title: str) -> list:
        """
        List the files directly inside an element's directory.

        Returns:
            List of dicts with 'path', 'name', 'modified', and 'size' keys

        Raises:
            StorageError: If listing fails
        """
        element_path = self.base_path / title

        if not element_path.exists():
            return []

        try:
            files = []

            for file_path in element_path.iterdir():
                if file_path.is_file():
                    stat = file_path.stat()
                    files.append({
                        'path': file_path,
                        'name': file_path.name,
                        'modified': datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
                        'size': stat.st_size
                    })

            return files

        except OSError as e:
            raise StorageError(f"Failed to list local files: {e}")
