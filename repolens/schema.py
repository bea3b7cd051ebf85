from functools import lru_cache

from lancedb.pydantic import LanceModel, Vector


@lru_cache(maxsize=None)
def get_vector_record_model(dimension: int) -> type[LanceModel]:
    """Return the LanceDB row model for vectors of ``dimension`` floats.

    ``metadata`` holds the document metadata as a JSON string so the table
    schema does not change when new metadata keys are added. ``seq`` records
    insertion order and breaks ties between equal similarity scores.
    """

    class VectorRecordModel(LanceModel):
        id: str
        vector: Vector(dimension)  # type: ignore[valid-type]
        text: str
        file_path: str
        metadata: str
        seq: int

    VectorRecordModel.__name__ = f"VectorRecordModel{dimension}"
    return VectorRecordModel
