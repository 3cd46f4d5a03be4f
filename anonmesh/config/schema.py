"""Configuration schema using Pydantic."""

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from pydantic_settings import BaseSettings, SettingsConfigDict

from anonmesh.mesh.radio import MESH_CHARACTERISTIC_UUID, MESH_SERVICE_UUID


class Base(BaseModel):
    """Base model that accepts both camelCase and snake_case keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class MeshConfig(Base):
    """BLE mesh transport configuration."""

    node_id: str = ""                           # This node's mesh identity (sender_id of our packets)
    local_name: str = "anon0mesh"               # Name advertised to nearby peers
    service_uuid: str = MESH_SERVICE_UUID       # Scan filter / advertised service
    characteristic_uuid: str = MESH_CHARACTERISTIC_UUID  # Applied to the radio driver
    advertise: bool = True                      # Advertise when the radio supports it
    max_connections: int = Field(default=7, ge=1)
    connect_timeout: float = Field(default=10.0, gt=0)  # Seconds per connection attempt
    write_timeout: float = Field(default=5.0, gt=0)     # Seconds per radio write
    max_write_size: int = Field(default=512, ge=20)     # Bytes per radio write (MTU), header included
    max_frame_size: int = Field(default=262_144, ge=1)  # Largest reassembled frame accepted


class RelayConfig(Base):
    """Transaction relay configuration."""

    enabled: bool = False  # Relay TransactionPackets received from peers


class Config(BaseSettings):
    """Root configuration for anonmesh."""

    mesh: MeshConfig = Field(default_factory=MeshConfig)
    relay: RelayConfig = Field(default_factory=RelayConfig)

    model_config = SettingsConfigDict(env_prefix="ANONMESH_", env_nested_delimiter="__")
