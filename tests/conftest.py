import os

# 测试统一使用内存库，必须在 import core.db 之前设置
os.environ["DB_URL"] = "sqlite://"
os.environ.setdefault("CONFIG_FILE", os.path.join(os.path.dirname(__file__), "config.test.yaml"))
