"""Instance configuration"""
from embedded_cassandra.configs.cassandra_config import CassandraConfig

__all__ = ["CassandraConfig"]
