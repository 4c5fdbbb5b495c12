#!/usr/bin/env python3
"""
数据库初始化脚本

这个脚本用于创建所有数据库表。
"""
import logging
import os

# 确保在导入配置之前加载环境变量
from dotenv import load_dotenv
project_root = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
env_path = os.path.join(project_root, '.env')
if os.path.exists(env_path):
    load_dotenv(env_path)
else:
    # 如果没有.env文件，尝试使用.env.example
    env_example_path = os.path.join(project_root, '.env.example')
    if os.path.exists(env_example_path):
        load_dotenv(env_example_path)

from sqlalchemy.engine import Engine

from experiment_engine.db.base_class import Base
from experiment_engine.db.database import engine as default_engine

# 导入所有模型，确保它们被正确注册
import experiment_engine.models  # noqa: F401

logger = logging.getLogger(__name__)


def init_db(bind: Engine = None):
    """初始化数据库，创建所有表"""
    bind = bind or default_engine
    logger.info(f"Using database URL: {bind.url}")
    Base.metadata.create_all(bind=bind)
    logger.info("数据库表创建成功！")

if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    init_db()
