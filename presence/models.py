from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class UnknownLocation(BaseModel):
    """未知来源：尚未解析、私有地址或解析失败。resolved=False 表示仍在等待解析。"""
    kind: Literal["unknown"] = "unknown"
    resolved: bool = Field(default=False, description="是否已完成解析尝试")

    model_config = ConfigDict(extra="ignore", frozen=True)


class CountryLocation(BaseModel):
    """国家级来源。"""
    kind: Literal["country"] = "country"
    countryCode: str = Field(..., min_length=2, max_length=2, description="ISO 3166-1 alpha-2 国家代码")
    countryName: str = Field(..., min_length=1, description="国家显示名称")
    countryEmoji: str = Field(..., min_length=1, description="国旗符号")

    model_config = ConfigDict(extra="ignore", frozen=True)


class UsStateLocation(BaseModel):
    """美国州/领地级来源，优先于普通国家分类。"""
    kind: Literal["us_state"] = "us_state"
    countryCode: Literal["US"] = "US"
    stateCode: str = Field(..., min_length=2, max_length=2, description="州/领地代码")
    stateName: str = Field(..., min_length=1, description="州/领地名称")
    flagUrl: str = Field(..., min_length=1, description="州旗图片地址")

    model_config = ConfigDict(extra="ignore", frozen=True)


Location = Annotated[
    Union[UnknownLocation, CountryLocation, UsStateLocation],
    Field(discriminator="kind"),
]

UNRESOLVED = UnknownLocation(resolved=False)
UNKNOWN = UnknownLocation(resolved=True)


class Participant(BaseModel):
    """在线参与者的可观测状态（一条连接一份）。"""
    id: str
    label: str
    color: str
    x: Optional[float] = Field(None, description="最近一次已知 X 坐标，未上报前为空")
    y: Optional[float] = Field(None, description="最近一次已知 Y 坐标，未上报前为空")
    location: Location = Field(default=UNRESOLVED)

    def to_wire(self) -> dict:
        # 非当前变体的字段与未知坐标不出现在线上格式中。
        return self.model_dump(exclude_none=True)


class MoveUpdate(BaseModel):
    """位置上报。坐标必须是有限数值，不接受字符串或布尔值。"""
    id: str = Field(..., min_length=1, strict=True)
    x: float = Field(..., strict=True, allow_inf_nan=False)
    y: float = Field(..., strict=True, allow_inf_nan=False)

    model_config = ConfigDict(extra="ignore")


class LocationSubmission(BaseModel):
    """客户端自报来源（可选路径），与解析器结果走同一条传播链路。"""
    id: str = Field(..., min_length=1, strict=True)
    location: Location

    model_config = ConfigDict(extra="ignore")
