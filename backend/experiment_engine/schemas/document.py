from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class DocumentModel(BaseModel):
    """引擎交换文档的基础模型

    对外的文档字段使用 camelCase（如 startStageId），Python 代码中使用 snake_case，
    两种写法在输入时都可以接受。
    """
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )

    def to_document(self) -> dict:
        return self.model_dump(by_alias=True, mode="json")
