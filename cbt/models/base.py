from datetime import datetime
from typing import Any
from bson.objectid import ObjectId
from bson.dbref import DBRef
from mongoengine import Document, DictField, DateTimeField, EmbeddedDocument, ReferenceField

from cbt.utils.base import utc_now


class BaseDocumentMixin:
    def _sanitize_value(self, value: Any) -> Any:
        # References are rendered as ids; callers expand them explicitly
        if isinstance(value, Document):
            return str(value.id)
        if isinstance(value, DBRef):
            return str(value.id)
        elif isinstance(value, EmbeddedDocument):
            value = {k: self._sanitize_value(getattr(value, k)) for k in value._fields}
        if isinstance(value, list):
            return [self._sanitize_value(v) for v in value]
        if isinstance(value, dict):
            return {k: self._sanitize_value(v) for k, v in value.items()}
        if isinstance(value, datetime):
            return value.isoformat()
        if isinstance(value, ObjectId):
            return str(value)
        return value

    def to_output(self, fields=None, exclude=None):
        data: dict[str, Any] = {}
        exclude = exclude or []
        fields = fields or self._fields.keys()

        for field in fields:
            if field in exclude or field == "id":
                continue
            if isinstance(self._fields.get(field), ReferenceField):
                value = self._data.get(field)
            else:
                value = getattr(self, field)
            data[field] = self._sanitize_value(value)

        if getattr(self, "id", None) is not None:
            data["id"] = str(self.id)
        return data

    def to_dict(self, fields=None, exclude=None):
        return self.to_output(fields=fields, exclude=exclude)


class BaseEmbeddedDocument(EmbeddedDocument, BaseDocumentMixin):
    meta = {
        "abstract": True,
    }


class BaseDocument(Document, BaseDocumentMixin):
    metadata = DictField(default=dict, null=False)
    created_at = DateTimeField(default=utc_now, null=False)
    updated_at = DateTimeField(default=utc_now, null=False)

    meta = {
        "abstract": True,
    }

    def save(self, *args, **kwargs):
        self.updated_at = utc_now()
        return super().save(*args, **kwargs)


def reference_id(document: Document, field: str) -> ObjectId | None:
    """Id stored in a reference field, without dereferencing it."""
    value = document._data.get(field)
    if value is None:
        return None
    return getattr(value, "id", value)
