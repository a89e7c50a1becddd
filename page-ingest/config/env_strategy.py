import os


class BaseEnvConfig:
    def apply(self):
        raise NotImplementedError()


class PooledTesseractEnv(BaseEnvConfig):
    """Several worker processes: one OpenMP thread each, or they fight over cores."""
    def apply(self):
        os.environ.setdefault("OMP_THREAD_LIMIT", "1")


class SingleTesseractEnv(BaseEnvConfig):
    def apply(self):
        os.environ.pop("OMP_THREAD_LIMIT", None)


def get_env_strategy():
    num_workers = int(os.getenv("NUM_OCR_WORKERS", "2"))
    return PooledTesseractEnv() if num_workers > 1 else SingleTesseractEnv()
