"""
Decoradores para manejo automático de transacciones en los repositorios.
Evitan repetir try/commit/rollback en cada método que usa self.db.
"""
import logging
from functools import wraps
from typing import Callable, Any

logger = logging.getLogger(__name__)

def transactional(auto_commit: bool = True):
    """
    Decorador para métodos de repositorio con atributo ``db`` (Session).

    Args:
        auto_commit: Si True, hace commit al terminar. Si False, sólo rollback en error.

    Usage:
        @transactional()
        def create_download(self, ...):
            self.db.add(download)
            return download            # commit automático

        @transactional(auto_commit=False)
        def find_user(self, ...):
            return self.db.execute(...)  # sólo lectura
    """
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(self, *args, **kwargs) -> Any:
            try:
                result = func(self, *args, **kwargs)
                if auto_commit:
                    self.db.commit()
                return result
            except Exception as e:
                # Rollback y re-lanzar: el handler del núcleo decide
                self.db.rollback()
                logger.error(f"Error en {func.__name__}: {e}")
                raise
        return wrapper
    return decorator

# Alias para los casos comunes
auto_commit = transactional(auto_commit=True)
read_only = transactional(auto_commit=False)
